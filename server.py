"""Command line launcher for the chat engine HTTP service."""

from __future__ import annotations

import argparse
import logging
from typing import Optional

import uvicorn

from chat_engine import ChatConfig, ChatLLMConfig
from chat_engine.api import create_app
from chat_engine.registry import ModelRegistry

logger = logging.getLogger(__name__)


# ---------- CLI ----------
def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the streaming chat engine service.")
    parser.add_argument("--host", default="0.0.0.0", help="Host interface to bind.")
    parser.add_argument("--port", type=int, default=8010, help="Port to bind.")
    parser.add_argument("--log_dir", default="./logs", help="Directory for application logs.")
    parser.add_argument("--base_url", default="http://localhost:3000", help="Base URL of the AI gateway.")
    parser.add_argument("--auth_token", default="", help="Bearer token sent to the gateway.")
    parser.add_argument("--request_timeout", type=int, default=60, help="Timeout for gateway calls (seconds).")
    parser.add_argument("--default_model", default="stepfun/step-3.5-flash:free", help="Model for new conversations.")
    parser.add_argument("--compact_model", default="openai/gpt-oss-120b", help="Model used to summarise old turns.")
    parser.add_argument("--models_file", help="JSON list of model entries for the registry.")
    parser.add_argument("--max_context_tokens", type=int, default=128_000, help="Context size for unknown models.")
    parser.add_argument("--reserve_tokens", type=int, default=4_000, help="Tokens kept free for the reply.")
    parser.add_argument("--reveal_interval", type=float, default=0.02, help="Seconds between revealed characters.")
    parser.add_argument("--media_poll_interval", type=float, default=5.0, help="Chat media job poll interval.")
    parser.add_argument("--studio_poll_interval", type=float, default=3.0, help="Studio job poll interval.")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    chat_cfg = ChatConfig(
        llm=ChatLLMConfig(
            base_url=args.base_url,
            compact_model=args.compact_model,
            request_timeout=args.request_timeout,
            auth_token=args.auth_token,
        ),
        default_model_id=args.default_model,
        default_max_context_tokens=args.max_context_tokens,
        response_reserve_tokens=args.reserve_tokens,
        reveal_interval=args.reveal_interval,
        media_poll_interval=args.media_poll_interval,
        studio_poll_interval=args.studio_poll_interval,
    )
    registry_kwargs = {
        "default_max_context_tokens": args.max_context_tokens,
        "response_reserve_tokens": args.reserve_tokens,
    }
    registry = (
        ModelRegistry.from_file(args.models_file, **registry_kwargs)
        if args.models_file
        else ModelRegistry(**registry_kwargs)
    )

    app = create_app(chat_cfg, registry=registry, log_dir=args.log_dir)
    logger.info("Starting chat engine on %s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
