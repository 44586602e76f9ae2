"""Runtime helpers for deploying the guideline engine."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Mapping, Optional

from .clients import LLMClient
from .manager import GuidelineChatAgent, GuidelineEngine, SUPERVISION_MODES
from .prompts import DEFAULT_PERSONA
from .storage import GuidelineDatabase, SEED_GUIDELINES
from .tools import GuidelineIndexTool

logger = logging.getLogger(__name__)

OPENAI_URL = "https://api.openai.com/v1"


@dataclass
class GuidelineRuntime:
    """Wire storage, clients and the engine from plain settings."""

    db_path: str = "guidepost.sqlite"
    llm_url: str = OPENAI_URL
    llm_model: str = "gpt-4o-mini"
    llm_provider: str = "openai"
    embed_url: str = OPENAI_URL
    embed_model: str = "text-embedding-3-small"
    embed_provider: str = "openai"
    match_threshold: float = 0.3
    match_count: int = 5
    history_window: int = 3
    supervision_mode: str = "validate"
    persona: str = DEFAULT_PERSONA

    def __post_init__(self) -> None:
        if self.db_path != ":memory:":
            db_parent = Path(self.db_path).expanduser().resolve().parent
            db_parent.mkdir(parents=True, exist_ok=True)
            self.database = GuidelineDatabase(str(Path(self.db_path).expanduser()))
        else:
            self.database = GuidelineDatabase(":memory:")

        self.llm_client = LLMClient(
            base_url=self.llm_url,
            model=self.llm_model,
            provider=self.llm_provider,
        )
        self.embedding_client = LLMClient(
            base_url=self.embed_url,
            model=self.embed_model,
            provider=self.embed_provider,
            default_extra_body={},
        )

        self.engine = GuidelineEngine(
            db=self.database,
            llm_client=self.llm_client,
            embedding_client=self.embedding_client,
            match_threshold=self.match_threshold,
            match_count=self.match_count,
            history_window=self.history_window,
            supervision_mode=self.supervision_mode,
            persona=self.persona,
        )
        self.agent = GuidelineChatAgent(engine=self.engine)
        self.index_tool = GuidelineIndexTool(db=self.database, embed_texts=self.embedding_client.embed)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def chat(self, request: Mapping[str, Any]) -> Iterator[str]:
        return self.agent.stream(request)

    def seed(self, guidelines: Optional[Iterable[Mapping[str, Any]]] = None) -> List[int]:
        ids: List[int] = []
        for item in guidelines if guidelines is not None else SEED_GUIDELINES:
            ids.append(
                self.database.add_guideline(
                    title=str(item["title"]),
                    condition=str(item["condition"]),
                    action=str(item["action"]),
                    priority=int(item.get("priority") or 0),
                    category=item.get("category"),
                )
            )
        logger.info("Seeded %s guidelines", len(ids))
        return ids

    def reindex(self) -> Mapping[str, Any]:
        return self.index_tool()


def _iter_records(stream: Iterable[str], required: Iterable[str]) -> Iterator[Mapping[str, Any]]:
    fields = list(required)
    for raw_line in stream:
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError as exc:  # pragma: no cover - CLI guard
            logger.error("Skipping malformed JSON line: %s", line)
            raise SystemExit(1) from exc
        if not isinstance(record, Mapping) or any(name not in record for name in fields):
            logger.error("Each line must include %s: %s", ", ".join(fields), line)
            raise SystemExit(1)
        yield record


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the guideline-supervised chat engine")
    parser.add_argument("--db", default="guidepost.sqlite", help="SQLite file for guidelines and sessions")
    parser.add_argument("--llm-url", default=OPENAI_URL, help="Base URL of the LLM server")
    parser.add_argument("--llm-model", default="gpt-4o-mini", help="LLM model name exposed by the server")
    parser.add_argument(
        "--llm-provider",
        choices=["vllm", "deepseek", "openai"],
        default="openai",
        help="LLM provider type",
    )
    parser.add_argument("--embed-url", default=OPENAI_URL, help="Base URL of the embedding server")
    parser.add_argument(
        "--embed-model",
        default="text-embedding-3-small",
        help="Embedding model name exposed by the server",
    )
    parser.add_argument(
        "--embed-provider",
        choices=["vllm", "deepseek", "openai"],
        default="openai",
        help="Embedding provider type",
    )
    parser.add_argument("--threshold", type=float, default=0.3, help="Minimum guideline similarity")
    parser.add_argument("--match-count", type=int, default=5, help="Maximum candidates per turn")
    parser.add_argument(
        "--history-window",
        type=int,
        default=3,
        help="Number of preceding turns shown to the applicability classifier",
    )
    parser.add_argument(
        "--supervision",
        choices=list(SUPERVISION_MODES),
        default="validate",
        help="validate: flag non-compliance; rewrite: let the supervisor correct the draft",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging to trace prompt/response payloads.",
    )

    commands = parser.add_subparsers(dest="command", required=True)
    chat = commands.add_parser("chat", help="Answer JSONL requests of {messages, sessionId}")
    chat.add_argument("--input", type=Path, help="JSONL file; defaults to standard input")
    seed = commands.add_parser("seed", help="Insert guidelines and embed them")
    seed.add_argument("--input", type=Path, help="JSONL guidelines; defaults to the built-in set")
    commands.add_parser("reindex", help="Embed guidelines that have no embedding")
    return parser


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    runtime = GuidelineRuntime(
        db_path=str(args.db),
        llm_url=args.llm_url,
        llm_model=args.llm_model,
        llm_provider=args.llm_provider,
        embed_url=args.embed_url,
        embed_model=args.embed_model,
        embed_provider=args.embed_provider,
        match_threshold=args.threshold,
        match_count=args.match_count,
        history_window=args.history_window,
        supervision_mode=args.supervision,
    )

    if args.command == "seed":
        if args.input:
            with args.input.open("r", encoding="utf-8") as fh:
                runtime.seed(list(_iter_records(fh, ("title", "condition", "action"))))
        else:
            runtime.seed()
        print(json.dumps(runtime.reindex(), ensure_ascii=False))
        return 0

    if args.command == "reindex":
        print(json.dumps(runtime.reindex(), ensure_ascii=False))
        return 0

    def _run_stream(stream: Iterable[str]) -> None:
        for request in _iter_records(stream, ("messages",)):
            for frame in runtime.chat(request):
                sys.stdout.write(frame)
            sys.stdout.flush()

    if args.input:
        with args.input.open("r", encoding="utf-8") as fh:
            _run_stream(fh)
    else:
        _run_stream(sys.stdin)
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
