#!/usr/bin/env python3
"""
joust/cli.py - Command line interface for Agent Joust

Usage:
    joust serve [--port 3030] [--db path] [--config path]
    joust step <joust_id> [--until-done]
    joust show <joust_id>
"""

import argparse
import logging
import sys
from pathlib import Path

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def _config(args):
    from joust.config import load_config

    config = load_config(Path(args.config) if args.config else None)
    if getattr(args, "db", None):
        config.store.driver = "sqlite"
        config.store.path = args.db
    return config


def cmd_serve(args):
    """Start the joust HTTP server."""
    import uvicorn

    from arena.server import app

    config = _config(args)
    if args.port:
        config.port = args.port

    # Lifespan picks the config up from app state
    app.state.config = config
    logger.info(f"Starting joust server on port {config.port} (store: {config.store.driver})")
    uvicorn.run(app, host="0.0.0.0", port=config.port, log_level="info")
    return 0


def cmd_step(args):
    """Advance a joust against the configured store, without a server."""
    from arena.server import build_engine, open_store
    from joust.callbacks import CallbackError
    from joust.store import JoustNotFoundError

    config = _config(args)
    store = open_store(config)
    engine = build_engine(store, config)

    try:
        if args.until_done:
            state = engine.run_to_completion(args.joust_id)
        else:
            state = engine.advance(args.joust_id)
    except JoustNotFoundError:
        logger.error(f"Joust not found: {args.joust_id}")
        return 1
    except CallbackError as e:
        logger.error(f"Step failed (safe to retry): {e}")
        return 2

    logger.info(f"Joust {args.joust_id} is now {state.value}")
    return 0


def _option_label(prompt, choice, missing: str = "-") -> str:
    if choice is None:
        return missing
    return f"{choice} ({prompt.option_text(choice)})"


def cmd_show(args):
    """Print a joust's rounds and results."""
    from rich.console import Console
    from rich.table import Table

    from arena.server import open_store
    from joust.models import Round

    config = _config(args)
    store = open_store(config)
    joust = store.get_joust(args.joust_id)
    if joust is None:
        logger.error(f"Joust not found: {args.joust_id}")
        return 1

    console = Console()
    console.print()
    console.print(f"[bold]{joust.title}[/bold] ({joust.id}) [cyan]{joust.state.value}[/cyan]")
    console.print(f"  {joust.prompt.question}  A: {joust.prompt.a}  B: {joust.prompt.b}")
    console.print()

    results = joust.results
    table = Table(title="Tribes", show_header=True, header_style="bold cyan")
    table.add_column("Tribe", style="bold", min_width=14)
    table.add_column("Round 1", max_width=40)
    table.add_column("Pick", justify="center")
    table.add_column("Round 2", max_width=50)
    table.add_column("Persuasion", justify="right")
    table.add_column("Δ Infamy", justify="right")
    table.add_column("W-L", justify="right")

    for tribe_id in joust.tribe_ids:
        tribe = store.get_tribe(tribe_id)
        r1 = joust.post(Round.ROUND1, tribe_id)
        r2 = joust.post(Round.ROUND2, tribe_id)
        score = results.tribe_results.get(tribe_id) if results else None
        name = tribe.name if tribe else tribe_id
        if results and results.winner_tribe_id == tribe_id:
            name = f"👑 {name}"
        table.add_row(
            name,
            r1.message if r1 else "",
            _option_label(joust.prompt, r2.choice) if r2 else "",
            r2.message if r2 else "",
            str(score.persuasion_score) if score else "",
            f"{score.delta_infamy:+d}" if score else "",
            tribe.record if tribe else "",
        )
    console.print(table)

    if results:
        totals = results.vote_totals
        console.print(
            f"\n[bold]Votes:[/bold] A {totals.get('A', 0)} / B {totals.get('B', 0)}"
            f"  winning option: {_option_label(joust.prompt, results.winning_option, 'tie')}"
        )
        console.print(f"[bold]Decision:[/bold] {results.decision.mode} - {results.decision.verdict}")
        if results.migration.moved_agents:
            console.print(f"[bold]Conquest:[/bold] {results.migration.moved_agents} agent(s) moved")
    console.print()
    return 0


def main():
    parser = argparse.ArgumentParser(
        prog="joust",
        description="Would-you-rather jousts between tribes of AI agents",
    )
    parser.add_argument("--config", default=None, help="Config file (default: ~/.joust/config.toml)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Start the joust server")
    serve_parser.add_argument("--port", "-p", type=int, default=None, help="Server port (default: 3030)")
    serve_parser.add_argument("--db", default=None, help="SQLite database path")
    serve_parser.set_defaults(func=cmd_serve)

    # step command
    step_parser = subparsers.add_parser("step", help="Advance a joust one state")
    step_parser.add_argument("joust_id", help="Joust id")
    step_parser.add_argument("--until-done", action="store_true", help="Keep stepping until the joust is done")
    step_parser.add_argument("--db", default=None, help="SQLite database path")
    step_parser.set_defaults(func=cmd_step)

    # show command
    show_parser = subparsers.add_parser("show", help="Show a joust's rounds and results")
    show_parser.add_argument("joust_id", help="Joust id")
    show_parser.add_argument("--db", default=None, help="SQLite database path")
    show_parser.set_defaults(func=cmd_show)

    args = parser.parse_args()
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
