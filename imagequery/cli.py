"""Command line interface for ImageQuery."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, List

from imagequery.config import Config, get_config
from imagequery.controller import ConversationController
from imagequery.errors import ControllerBusy, InvalidOperation, NotFound
from imagequery.export import FORMATS, ChatExporter
from imagequery.messages import Message
from imagequery.models.registry import ModelRegistry

HELP_TEXT = """Commands:
  /retry             retry the last failed response
  /edit N TEXT       replace your message number N and regenerate
  /image PATH        attach an image to the next message
  /new [TITLE]       start a new chat
  /sessions          list chats
  /switch ID         open another chat
  /model NAME        pick a model ("auto" queries all of them)
  /quit              exit"""


def _print(obj: Any) -> None:
    print(json.dumps(obj, indent=2))


def _format_message(index: int, message: Message) -> str:
    if message.is_user:
        images = f" [+{len(message.image_refs)} image(s)]" if message.image_refs else ""
        return f"[{index}] you: {message.text}{images}"
    if message.failed:
        return f"[{index}] !! {message.error}"
    confidence = f" {message.confidence:.0%}" if message.confidence is not None else ""
    return f"[{index}] {message.model_used}{confidence}: {message.text}"


def _configure_logging(config: Config, verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


async def _chat(controller: ConversationController, args: argparse.Namespace) -> None:
    await controller.initialize()
    if args.session:
        await controller.switch_to_chat_session(args.session)
    elif controller.chat_sessions and not args.new:
        await controller.switch_to_chat_session(controller.chat_sessions[0].id)
    if controller.current_session:
        print(f"[imagequery] {controller.current_session.title} ({controller.current_session.id})")
        for index, message in enumerate(controller.current_messages):
            print(_format_message(index, message))
    print("Type /help for commands.", file=sys.stderr)

    images: List[str] = []
    loop = asyncio.get_running_loop()
    try:
        while True:
            line = await loop.run_in_executor(None, input, "> ")
            line = line.strip()
            if not line:
                continue
            try:
                reply = None
                if line in ("/quit", "/exit"):
                    break
                elif line == "/help":
                    print(HELP_TEXT)
                    continue
                elif line == "/retry":
                    reply = await controller.retry_last_message()
                elif line.startswith("/edit "):
                    _, index, text = (line.split(" ", 2) + [""])[:3]
                    target = controller.current_messages[int(index)]
                    reply = await controller.edit_message(target.id, text)
                elif line.startswith("/image "):
                    images.append(line.split(" ", 1)[1].strip())
                    print(f"attached {len(images)} image(s)")
                    continue
                elif line.startswith("/new"):
                    title = line[len("/new"):].strip() or None
                    session = await controller.create_new_chat_session(title)
                    print(f"[imagequery] {session.title} ({session.id})")
                    continue
                elif line == "/sessions":
                    for session in controller.chat_sessions:
                        print(f"{session.id}  {session.title}  ({session.message_count} messages)")
                    continue
                elif line.startswith("/switch "):
                    await controller.switch_to_chat_session(line.split(" ", 1)[1].strip())
                    for index, message in enumerate(controller.current_messages):
                        print(_format_message(index, message))
                    continue
                elif line.startswith("/model "):
                    controller.set_model(line.split(" ", 1)[1].strip())
                    print(f"model: {controller.model}")
                    continue
                else:
                    reply = await controller.send_message(line, images=images)
                    images = []
            except (ControllerBusy, InvalidOperation, NotFound, IndexError, ValueError) as exc:
                print(f"error: {exc}", file=sys.stderr)
                continue
            if reply is not None:
                print(_format_message(len(controller.current_messages) - 1, reply))
            if controller.error and (reply is None or not reply.failed):
                print(f"warning: {controller.error}", file=sys.stderr)
    except (EOFError, KeyboardInterrupt):
        pass
    finally:
        await controller.close()


async def _send(controller: ConversationController, args: argparse.Namespace) -> int:
    await controller.initialize()
    if args.session:
        await controller.switch_to_chat_session(args.session)
    reply = await controller.send_message(args.text, images=args.image or [], model=args.model)
    _print({
        "session": controller.current_session.to_dict() if controller.current_session else None,
        "reply": reply.to_dict() if reply else None,
        "error": controller.error,
    })
    return 1 if reply is None or reply.failed else 0


def cmd_chat(args: argparse.Namespace) -> None:
    config = get_config()
    _configure_logging(config, args.verbose)
    controller = ConversationController.from_config(config)
    if args.model:
        controller.set_model(args.model)
    asyncio.run(_chat(controller, args))


def cmd_send(args: argparse.Namespace) -> None:
    config = get_config()
    _configure_logging(config, args.verbose)
    controller = ConversationController.from_config(config)
    sys.exit(asyncio.run(_send(controller, args)))


def cmd_sessions(args: argparse.Namespace) -> None:
    config = get_config()
    controller = ConversationController.from_config(config)

    async def _run() -> None:
        await controller.initialize()
        if args.sessions_cmd == "delete":
            await controller.delete_chat_session(args.session_id)
            _print({"ok": True})
        elif args.sessions_cmd == "rename":
            session = await controller.rename_chat_session(args.session_id, args.title)
            _print(session.to_dict())
        elif args.sessions_cmd == "export":
            if args.output:
                path = ChatExporter(controller.store).write(args.format, Path(args.output))
                _print({"path": str(path), "stats": controller.export_statistics()})
            else:
                sys.stdout.write(controller.export_chat_data(args.format))
        elif args.sessions_cmd == "show":
            await controller.switch_to_chat_session(args.session_id)
            _print({"messages": [m.to_dict() for m in controller.current_messages]})
        else:
            _print({"sessions": [s.to_dict() for s in controller.chat_sessions]})

    try:
        asyncio.run(_run())
    except (NotFound, InvalidOperation) as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(1)


def cmd_search(args: argparse.Namespace) -> None:
    controller = ConversationController.from_config(get_config())
    hits = controller.search_messages(args.query, limit=args.limit)
    _print({"messages": [m.to_dict() for m in hits]})


def cmd_models(args: argparse.Namespace) -> None:
    config = get_config()
    registry = ModelRegistry.from_config(config)
    _print({"default": config.default_model, "models": registry.list_models()})


def cmd_serve(args: argparse.Namespace) -> None:
    import uvicorn

    config = get_config()
    _configure_logging(config, args.verbose)
    host = args.host or config.server.get("host", "127.0.0.1")
    port = args.port or int(config.server.get("port", 8095))
    uvicorn.run("imagequery.server:app", host=host, port=port, log_level=config.log_level.lower())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="imagequery", description="Chat with Gemini and HuggingFace models")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command")

    chat = sub.add_parser("chat", help="interactive chat")
    chat.add_argument("--session", help="open this session")
    chat.add_argument("--new", action="store_true", help="start a new session")
    chat.add_argument("--model", help='model id or "auto"')

    send = sub.add_parser("send", help="send one message and print the reply")
    send.add_argument("text")
    send.add_argument("--image", action="append", help="image to attach (repeatable)")
    send.add_argument("--session", help="append to this session instead of a new one")
    send.add_argument("--model", help='model id or "auto"')

    sessions = sub.add_parser("sessions")
    sessions_sub = sessions.add_subparsers(dest="sessions_cmd")
    sessions_sub.add_parser("list")
    show = sessions_sub.add_parser("show")
    show.add_argument("session_id")
    delete = sessions_sub.add_parser("delete")
    delete.add_argument("session_id")
    rename = sessions_sub.add_parser("rename")
    rename.add_argument("session_id")
    rename.add_argument("title")
    export = sessions_sub.add_parser("export", help="dump every chat")
    export.add_argument("--format", choices=sorted(FORMATS), default="json")
    export.add_argument("--output", help="write a timestamped file into this directory")

    search = sub.add_parser("search")
    search.add_argument("query")
    search.add_argument("--limit", type=int, default=20)

    sub.add_parser("models")

    serve = sub.add_parser("serve")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    if args.command == "chat":
        cmd_chat(args)
    elif args.command == "send":
        cmd_send(args)
    elif args.command == "sessions":
        cmd_sessions(args)
    elif args.command == "search":
        cmd_search(args)
    elif args.command == "models":
        cmd_models(args)
    elif args.command == "serve":
        cmd_serve(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
