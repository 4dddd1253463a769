"""
Command-line entry point: ask the configured Agent Engine one question.

    python -m src.core.cli "How many orders shipped last week?" --user-id alice

The answer is streamed to stdout as it arrives; agent status lines go to
stderr. Configuration comes from ``.env``, the environment and an optional
YAML file.
"""

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence

import httpx

from src.connectors.agent_engine import build_agent_engine_client
from src.core.agent_engine.error_envelope import build_error_envelope
from src.core.common.exceptions import AgentEngineClientError
from src.core.config.app_config import AppConfig, LogLevel, load_config

DEFAULT_USER_ID = "cli-user"


def build_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Stream one answer from a Vertex AI Agent Engine"
    )
    parser.add_argument("message", help="Question to send to the agent")
    parser.add_argument(
        "--user-id",
        dest="user_id",
        default=DEFAULT_USER_ID,
        help=f"Opaque user id passed to the engine (default: {DEFAULT_USER_ID})",
    )
    parser.add_argument(
        "--session-id",
        dest="session_id",
        default=None,
        help="Reuse an existing provider session instead of creating one",
    )
    parser.add_argument(
        "--config",
        dest="config_file",
        metavar="FILE",
        help="Path to a YAML configuration file",
    )
    parser.add_argument(
        "--log-level",
        dest="log_level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Set the logging level (default: use config or INFO)",
    )
    parser.add_argument(
        "--envelope",
        action="store_true",
        help="Print failures as AGENT_ENGINE_ERROR:: envelopes",
    )
    return parser


def parse_cli_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    return build_cli_parser().parse_args(argv)


def apply_cli_args(args: argparse.Namespace) -> AppConfig:
    cfg = load_config(args.config_file)
    if args.log_level is not None:
        cfg.logging.level = LogLevel[args.log_level]
    return cfg


def _configure_logging(cfg: AppConfig) -> None:
    """Configure logging based on configuration."""
    from src.core.common.logging_utils import (
        configure_logging_with_environment_tagging,
        install_token_redaction_filter,
    )

    configure_logging_with_environment_tagging(
        level=getattr(logging, cfg.logging.level.value),
        log_file=cfg.logging.log_file,
    )
    if cfg.logging.redact_tokens:
        install_token_redaction_filter()


async def run_query(
    cfg: AppConfig,
    message: str,
    *,
    user_id: str,
    session_id: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> str:
    """Stream one turn, echoing text to stdout; returns the session id used."""
    async with client or httpx.AsyncClient() as http_client:
        engine = build_agent_engine_client(cfg, http_client)
        turn = engine.run_turn(user_id, message, session_id)
        async for event in turn:
            if event.kind == "status":
                sys.stderr.write(f"[{event.value}]\n")
                sys.stderr.flush()
            else:
                sys.stdout.write(event.value)
                sys.stdout.flush()
        sys.stdout.write("\n")
        return turn.session_id or ""


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_cli_args(argv)
    try:
        cfg = apply_cli_args(args)
    except AgentEngineClientError as e:
        sys.stderr.write(f"ERROR: {e.message}\n")
        return 2

    _configure_logging(cfg)

    try:
        session_id = asyncio.run(
            run_query(
                cfg,
                args.message,
                user_id=args.user_id,
                session_id=args.session_id,
            )
        )
    except AgentEngineClientError as e:
        if args.envelope:
            sys.stderr.write(
                build_error_envelope(
                    e,
                    request_id="cli",
                    model_id=cfg.agent_engine.reasoning_engine or "",
                    session_id=args.session_id,
                )
                + "\n"
            )
        else:
            sys.stderr.write(f"ERROR: {e.message}\n")
        return 1
    except KeyboardInterrupt:
        return 130

    if logging.getLogger().isEnabledFor(logging.INFO):
        logging.info(f"Session id: {session_id}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
