"""localchat - chat with a local Ollama server from the terminal.

Entry point for the application.
Usage:
    localchat                           # Start the chat CLI
    localchat --init                    # Write the default config file
    localchat --config path/to.yaml     # Use a specific config file
    localchat --model llama3.1          # Default model for new sessions
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from localchat.config import ChatConfig, get_localchat_home, load_config, save_default_config
from localchat.core.engine import ChatEngine
from localchat.core.memory.store import SQLiteSessionStore
from localchat.core.ollama_client import OllamaClient
from localchat.core.sessions import SessionManager
from localchat.core.tokens import TokenCounter

if TYPE_CHECKING:
    from localchat.ui.cli import CLI

logger = structlog.get_logger()


def setup_logging(level: str = "WARNING") -> None:
    """Configure structured logging to stderr."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if sys.stderr.isatty() else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.WARNING)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def ensure_localchat_home() -> Path:
    """Ensure the ~/.localchat directory structure exists."""
    home = get_localchat_home()
    for d in (home, home / "history"):
        d.mkdir(parents=True, exist_ok=True)
    return home


def _load_env() -> None:
    """Load .env files from the working directory and ~/.localchat/."""
    from dotenv import load_dotenv

    env_file = Path(".env")
    if env_file.exists():
        load_dotenv(env_file)

    home_env = get_localchat_home() / ".env"
    if home_env.exists():
        load_dotenv(home_env)


def build_engine(config: ChatConfig) -> ChatEngine:
    """Construct the store, counter, session manager, client and engine.

    Every component is created here and passed down explicitly.
    """
    store = SQLiteSessionStore(config.storage.resolve_db_path())
    counter = TokenCounter(config.context.encoding)
    session_manager = SessionManager(
        store,
        config=config.context,
        counter=counter,
        default_model=config.ollama.default_model,
    )
    client = OllamaClient(config.ollama)
    return ChatEngine(session_manager, client)


def build_app(config: ChatConfig) -> tuple[ChatEngine, CLI]:
    """Build the CLI application."""
    from localchat.ui.cli import CLI

    engine = build_engine(config)
    cli = CLI(engine=engine, config=config)
    return engine, cli


async def async_main(config: ChatConfig) -> None:
    """Async entry point for CLI mode."""
    engine, cli = build_app(config)
    try:
        await engine.sessions.counter.preload()
        await engine.sessions.initialize()
        if engine.sessions.current_session is None:
            await engine.create_session()
        await cli.run()
    finally:
        await engine.client.aclose()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="localchat - chat with a local Ollama server",
        prog="localchat",
    )
    parser.add_argument(
        "--init",
        action="store_true",
        help="Initialize default configuration",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config file (default: ~/.localchat/config.yaml)",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=None,
        help="Default model for new sessions (overrides config)",
    )
    args = parser.parse_args()

    ensure_localchat_home()
    _load_env()

    if args.init:
        config_path = save_default_config(
            Path(args.config) if args.config else None
        )
        print(f"Default config saved to: {config_path}")
        return

    config = load_config(Path(args.config) if args.config else None)
    if args.model:
        config = config.model_copy(
            update={"ollama": config.ollama.model_copy(update={"default_model": args.model})}
        )
    setup_logging(config.log_level)

    try:
        asyncio.run(async_main(config))
    except KeyboardInterrupt:
        print("\nGoodbye!")


if __name__ == "__main__":
    main()
