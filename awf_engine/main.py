"""AWF engine dev CLI.

Runs the turn pipeline against a fixture directory loaded into in-memory
repositories:

    awf-engine assemble fixtures/demo --input "I look around"
    awf-engine apply fixtures/demo --acts acts.yaml
    awf-engine turn fixtures/demo --input "I open the door" --dry-run

A fixture directory holds ``documents.yaml`` (documents by repository),
``game.yaml`` (game record + session) and optionally ``replies.yaml``
(scripted model replies; ``--live`` uses the OpenAI provider instead).
"""

import argparse
import asyncio
import json
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml
from rich.console import Console
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from . import __version__
from .cache.provider import CacheProvider, InMemoryCacheProvider
from .cache.sql_provider import SqlCacheProvider
from .config import Config, configure_logging, load_budget_config
from .core.act_interpreter import ActInterpreter
from .core.assembler import AssemblerDeps, BundleAssembler
from .core.orchestrator import TurnOrchestrator
from .core.state_transaction import TurnCommitter
from .db.repositories import InMemoryDocumentRepository, InMemoryGameStore, Repositories
from .db.session import init_db, make_engine, make_session_factory
from .errors import AWFError
from .llm.openai_provider import OpenAIModelProvider
from .llm.provider import ModelProvider
from .llm.replay_provider import ReplayModelProvider
from .llm.tools import LoreSliceTool
from .metrics.collector import MetricsCollector
from .models.documents import SessionRecord, VersionedDocument
from .models.game_state import GameRecord
from .prompts.registry import PromptRegistry, SystemPrompts

console = Console()


# ── Fixtures ──────────────────────────────────────────────────────

@dataclass
class Fixture:
    repos: Repositories
    store: InMemoryGameStore
    session_id: str
    replies: list[Any] = field(default_factory=list)


def _read_yaml(path: Path) -> Any:
    with path.open(encoding="utf-8") as f:
        return yaml.safe_load(f)


def load_fixture(directory: Path) -> Fixture:
    """Load a fixture directory into in-memory repositories and a game store."""
    documents = _read_yaml(directory / "documents.yaml") or {}
    repos = Repositories.in_memory()
    for repo_name, entries in documents.items():
        repo = getattr(repos, repo_name, None)
        if not isinstance(repo, InMemoryDocumentRepository):
            raise ValueError(f"Unknown repository '{repo_name}' in {directory / 'documents.yaml'}")
        for entry in entries or []:
            entry = dict(entry)
            active = bool(entry.pop("active", False))
            scope = entry.pop("scope", None)
            repo.add(VersionedDocument.model_validate(entry), active=active, scope=scope)

    game_data = _read_yaml(directory / "game.yaml") or {}
    store = InMemoryGameStore()
    store.put_game(GameRecord.model_validate(game_data["game"]))
    session = SessionRecord.model_validate(game_data["session"])
    store.put_session(session)

    replies: list[Any] = []
    replies_path = directory / "replies.yaml"
    if replies_path.exists():
        replies = _read_yaml(replies_path) or []

    return Fixture(repos=repos, store=store, session_id=session.session_id, replies=replies)


def build_cache(backend: str | None = None, database_url: str | None = None) -> CacheProvider:
    """Cache provider for AWF_CACHE_BACKEND: in-process LRU, or rows in DATABASE_URL."""
    backend = backend or Config.CACHE_BACKEND
    if backend == "memory":
        return InMemoryCacheProvider(max_size=Config.CACHE_MAX_ENTRIES)
    if backend == "sql":
        engine = make_engine(database_url)
        init_db(engine)
        return SqlCacheProvider(make_session_factory(engine))
    raise ValueError(f"Unknown cache backend {backend!r}, expected 'memory' or 'sql'")


def build_orchestrator(fixture: Fixture, provider: ModelProvider) -> TurnOrchestrator:
    config = load_budget_config()
    cache = build_cache()
    metrics = MetricsCollector()
    assembler = BundleAssembler(AssemblerDeps(
        repos=fixture.repos, games=fixture.store, cache=cache, config=config, metrics=metrics,
    ))
    return TurnOrchestrator(
        assembler=assembler,
        provider=provider,
        committer=TurnCommitter(fixture.store),
        metrics=metrics,
        prompts=SystemPrompts(PromptRegistry(), config),
        lore_tool=LoreSliceTool(fixture.repos, cache),
        config=config,
    )


# ── Output ────────────────────────────────────────────────────────

def print_banner():
    banner = Text()
    banner.append(f"AWF engine {__version__}", style="bold cyan")
    banner.append(" - turn pipeline dev console", style="cyan")
    console.print(Panel(banner, border_style="cyan", padding=(0, 2)))


def print_json(title: str, value: Any):
    rendered = json.dumps(value, indent=2, ensure_ascii=False, default=str)
    console.print(Panel(Syntax(rendered, "json", word_wrap=True), title=f"[dim]{title}[/dim]", border_style="dim"))


def print_metrics(title: str, values: dict[str, Any]):
    table = Table(title=title, show_header=False, box=None)
    table.add_column(style="dim")
    table.add_column()
    for key, value in values.items():
        table.add_row(key, str(value))
    console.print(table)


# ── Commands ──────────────────────────────────────────────────────

async def cmd_assemble(args) -> int:
    fixture = load_fixture(Path(args.fixture))
    assembler = BundleAssembler(AssemblerDeps(
        repos=fixture.repos, games=fixture.store, cache=build_cache(), config=load_budget_config(),
    ))
    result = await assembler.assemble(args.session or fixture.session_id, args.input)
    print_metrics("Bundle", result.metrics.model_dump())
    for reduction in result.budget_result.reductions:
        console.print(f"[yellow]Reduction {reduction.type}:[/yellow] {reduction.description} (-{reduction.tokens_saved})")
    print_json("Bundle", result.bundle)
    return 0


async def cmd_apply(args) -> int:
    fixture = load_fixture(Path(args.fixture))
    session_id = args.session or fixture.session_id
    acts = _read_yaml(Path(args.acts)) or []
    if isinstance(acts, dict):
        acts = acts.get("acts", [])

    assembler = BundleAssembler(AssemblerDeps(
        repos=fixture.repos, games=fixture.store, cache=build_cache(), config=load_budget_config(),
    ))
    assembled = await assembler.assemble(session_id, "")
    game = assembled.game
    interpreter = ActInterpreter(
        acts_map=assembled.acts_map,
        world_doc=assembled.world_doc,
        contract_doc=assembled.contract_doc,
        episodic_cap=assembler.config.episodic_cap,
    )
    result = interpreter.apply_acts(acts, game.state, is_first_turn=game.is_first_turn, turn_index=assembled.turn_id)
    stored = await TurnCommitter(fixture.store).commit(game, result.new_state)

    print_metrics("Apply", {"turn_count": stored.turn_count, "version": stored.version, **result.summary.act_counts()})
    for violation in result.summary.violations:
        console.print(f"[yellow]Violation:[/yellow] {violation}")
    print_json("Game state", stored.state.model_dump(mode="json"))
    return 0


async def cmd_turn(args) -> int:
    fixture = load_fixture(Path(args.fixture))
    if args.live:
        issues = Config.validate()
        if issues:
            console.print("[red]Configuration issues:[/red]")
            for issue in issues:
                console.print(f"  [red]• {issue}[/red]")
            return 1
        provider: ModelProvider = OpenAIModelProvider(
            api_key=Config.OPENAI_API_KEY,
            default_model=Config.MODEL_NAME,
            timeout_ms=Config.MODEL_TIMEOUT_MS,
            max_retries=Config.MODEL_MAX_RETRIES,
        )
    else:
        if not fixture.replies:
            console.print("[red]Fixture has no replies.yaml; pass --live to call the model[/red]")
            return 1
        provider = ReplayModelProvider(fixture.replies)

    orchestrator = build_orchestrator(fixture, provider)
    session_id = args.session or fixture.session_id

    if args.dry_run:
        dry = await orchestrator.run_turn_dry(session_id, args.input)
        print_metrics("Dry run", {k: v for k, v in asdict(dry.metrics).items() if not isinstance(v, dict)})
        print_json("Dry run", dry.to_dict() if args.show_bundle else {**dry.to_dict(), "bundle": "..."})
        return 0 if dry.ok else 1

    outcome = await orchestrator.run_turn(session_id, args.input)
    print_metrics("Turn", {k: v for k, v in asdict(outcome.metrics).items() if not isinstance(v, dict)})
    if not outcome.ok:
        console.print(f"[red]{outcome.error.kind} in {outcome.error.phase}: {outcome.error.message}[/red]")
        return 1

    response = outcome.response
    console.print(f"\n[bold]{response.meta.scn}[/bold]")
    console.print(f"{response.txt}\n")
    for choice in response.choices:
        console.print(f"  [yellow]{choice.id}[/yellow]  {choice.label}")
    if outcome.summary and outcome.summary.violations:
        for violation in outcome.summary.violations:
            console.print(f"[dim]violation: {violation}[/dim]")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="awf-engine", description="AWF turn engine dev console")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    assemble = sub.add_parser("assemble", help="Assemble and print the bundle for a session")
    assemble.add_argument("fixture")
    assemble.add_argument("--session")
    assemble.add_argument("--input", default="")
    assemble.set_defaults(handler=cmd_assemble)

    apply = sub.add_parser("apply", help="Apply acts from a YAML/JSON file to the fixture game")
    apply.add_argument("fixture")
    apply.add_argument("--acts", required=True)
    apply.add_argument("--session")
    apply.set_defaults(handler=cmd_apply)

    turn = sub.add_parser("turn", help="Run one full turn")
    turn.add_argument("fixture")
    turn.add_argument("--input", required=True)
    turn.add_argument("--session")
    turn.add_argument("--dry-run", action="store_true", help="Assemble, infer and validate only")
    turn.add_argument("--live", action="store_true", help="Call the configured OpenAI model")
    turn.add_argument("--show-bundle", action="store_true")
    turn.set_defaults(handler=cmd_turn)
    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point for the CLI."""
    args = build_parser().parse_args(argv)
    configure_logging(args.debug or None)
    print_banner()
    try:
        return asyncio.run(args.handler(args))
    except AWFError as e:
        console.print(f"[red]{e.kind}: {e}[/red]")
        return 1
    except (OSError, ValueError, KeyError) as e:
        console.print(f"[red]Error: {e}[/red]")
        if args.debug:
            console.print_exception()
        return 1


if __name__ == "__main__":
    sys.exit(main())
