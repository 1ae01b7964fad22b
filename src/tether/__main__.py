"""CLI entry point for Tether."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import uvicorn

from .config import AppConfig, _get_config_path, load_config


def _print_setup_guide(config_path: Path) -> None:
    print(
        f"\nTo get started, create {config_path} with:\n\n"
        "ai:\n"
        '  base_url: "https://your-ai-endpoint/v1"\n'
        '  api_key: "your-api-key"\n'
        '  model: "gpt-4o-mini"\n'
        "\nOr set environment variables:\n"
        "  AI_CHAT_BASE_URL=https://your-ai-endpoint/v1\n"
        "  AI_CHAT_API_KEY=your-api-key\n"
        "  AI_CHAT_MODEL=gpt-4o-mini\n",
        file=sys.stderr,
    )


def _load_config_or_exit() -> tuple[Path, AppConfig]:
    config_path = _get_config_path()
    try:
        config = load_config()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        _print_setup_guide(config_path)
        sys.exit(1)
    return config_path, config


async def _test_connection(config: AppConfig) -> None:
    from .services.ai_service import AIService

    ai_service = AIService(config.ai)

    print("Config:")
    print(f"  Endpoint: {config.ai.base_url}")
    print(f"  Model:    {config.ai.model}")
    print(f"  SSL:      {'enabled' if config.ai.verify_ssl else 'disabled'}")

    print("\n1. Listing models...")
    valid, message, models = await ai_service.validate_connection()
    if not valid:
        print(f"   FAILED - {message}")
        sys.exit(1)
    print(f"   OK - {len(models)} model(s) available")
    for m in models[:10]:
        print(f"     - {m}")

    print(f"\n2. Streaming a test step from {config.ai.model}...")
    step = ai_service.stream_step([{"role": "user", "parts": [{"type": "text", "text": "Say hello in one sentence."}]}])
    try:
        text = "".join([chunk["delta"] async for chunk in step if chunk["type"] == "text-delta"])
    except Exception as e:
        print(f"   FAILED - {e}")
        sys.exit(1)
    print(f"   OK - Response: {text.strip() or '(empty response)'} [{step.finish_reason}]")

    print("\nAll checks passed.")


def _run_server(config: AppConfig, config_path: Path, log_level: str) -> None:
    print(f"Config loaded from {config_path}")
    print(f"  AI endpoint: {config.ai.base_url}")
    print(f"  Model: {config.ai.model}")
    print(f"  Data dir: {config.app.data_dir}")

    from .app import create_app

    app = create_app(config)

    print(f"\nStarting Tether at http://{config.app.host}:{config.app.port}")
    if config.app.host in ("0.0.0.0", "::"):
        print("  WARNING: Binding to all interfaces. The API is accessible from the network.", file=sys.stderr)

    uvicorn.run(app, host=config.app.host, port=config.app.port, log_level=log_level)


def _run_chat(url: str, prompt: str | None, resume_id: str | None, model: str | None) -> None:
    from .cli.repl import run_cli

    asyncio.run(run_cli(url, prompt=prompt, resume_id=resume_id, model=model))


def main() -> None:
    parser = argparse.ArgumentParser(prog="tether", description="Tether - durable, resumable AI chat streams")
    subparsers = parser.add_subparsers(dest="command")

    chat_parser = subparsers.add_parser("chat", help="Chat with a running Tether server")
    chat_parser.add_argument("prompt", nargs="?", default=None, help="One-shot prompt (omit for REPL)")
    chat_parser.add_argument("--url", default=None, help="Server URL (default: from config)")
    chat_parser.add_argument("-r", "--resume", dest="resume_id", default=None, help="Resume a chat by ID")
    chat_parser.add_argument("-m", "--model", default=None, help="Model for a new chat")

    parser.add_argument("--test", action="store_true", help="Test connection settings and exit")
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])

    args = parser.parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.command == "chat":
        url = args.url
        if url is None:
            _, config = _load_config_or_exit()
            url = f"http://{config.app.host}:{config.app.port}"
        _run_chat(url, args.prompt, args.resume_id, args.model)
        return

    config_path, config = _load_config_or_exit()

    if args.test:
        asyncio.run(_test_connection(config))
        return

    _run_server(config, config_path, args.log_level)


if __name__ == "__main__":
    main()
