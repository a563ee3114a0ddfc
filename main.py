"""
main.py: Thin CLI entry point.

All command implementations live in chatbot_service/cli/ submodules.

Commands:
  serve-api           Start the FastAPI chat service
  seed-knowledge      Create the knowledge table and insert the default entries
"""

import argparse

from chatbot_service.config import load_chatbot_config


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Chatbot Service CLI")
    sub = p.add_subparsers(dest="command", required=True)

    p_api = sub.add_parser("serve-api")
    p_api.add_argument("--host", type=str, default="0.0.0.0")
    p_api.add_argument("--port", type=int, default=8000)

    p_seed = sub.add_parser("seed-knowledge")
    p_seed.add_argument(
        "--embed",
        action="store_true",
        help="Also compute embeddings for entries that have none",
    )

    return p


def main() -> None:
    cfg = load_chatbot_config()

    parser = build_parser()
    args = parser.parse_args()

    if args.command == "serve-api":
        from chatbot_service.cli.serve import cmd_serve_api
        cmd_serve_api(
            host=args.host,
            port=args.port,
            graceful_shutdown_seconds=cfg.api.graceful_shutdown_seconds,
        )

    elif args.command == "seed-knowledge":
        from chatbot_service.cli.knowledge import cmd_seed_knowledge
        cmd_seed_knowledge(cfg, embed=args.embed)


if __name__ == "__main__":
    main()
