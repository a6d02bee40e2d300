"""Interactive terminal client: type a message, watch the reply stream in."""

from __future__ import annotations

import asyncio
import contextlib
import signal
import sys
import threading

import structlog

from chatstream.chat_service import ChatService
from chatstream.config import Configuration
from chatstream.history.chat_store import ConversationStore
from chatstream.history.persistence import JsonFileStorage, SessionPersister
from chatstream.llm.client import LLMClient
from chatstream.logging_utils import configure_logging, operation_context

logger = structlog.get_logger(__name__)

HELP_TEXT = """Commands:
  /new                 start a new chat
  /list                list chats grouped by project
  /select N            switch to chat N
  /delete N            delete chat N
  /project new NAME    create a project
  /project delete N    delete project N (its chats become unorganized)
  /move N              move the current chat into project N (0 = none)
  /help                show this help
  /quit                exit
Anything else is sent as a message."""


def create_store(config: Configuration) -> ConversationStore:
    """Create the conversation store with configured title rules."""
    chat_config = config.get_chat_config()
    return ConversationStore(
        default_title=chat_config["default_title"],
        title_max_chars=chat_config["title_max_chars"],
    )


def create_persister(config: Configuration) -> SessionPersister:
    """Create the file-backed persister from storage configuration."""
    storage_config = config.get_storage_config()
    logger.info("Using JSON file storage", path=storage_config["path"])
    storage = JsonFileStorage(
        storage_config["path"],
        max_bytes=storage_config["max_bytes"],
        fsync_enabled=storage_config["fsync"],
    )
    return SessionPersister(storage)


class TerminalRenderer:
    """Prints only the newly arrived suffix of each published snapshot."""

    def __init__(self, store: ConversationStore, out=None):
        self.store = store
        self.out = out or sys.stdout
        self._printed = ""

    def reset(self) -> None:
        self._printed = ""

    def __call__(self, session_id: str, text: str, final: bool) -> None:
        if session_id != self.store.current_session_id:
            return
        if text.startswith(self._printed):
            self.out.write(text[len(self._printed):])
        else:
            self.out.write("\n" + text)
        self._printed = text
        if final:
            self.out.write("\n")
            self._printed = ""
        self.out.flush()


def _parse_index(arg: str, size: int) -> int:
    index = int(arg)
    if not 1 <= index <= size:
        raise ValueError(f"expected a number between 1 and {size}")
    return index - 1


def render_session_list(store: ConversationStore) -> str:
    lines = []
    sessions = store.list_sessions()
    numbering = {s.id: i for i, s in enumerate(sessions, start=1)}
    projects = {p.id: p for p in store.list_projects()}
    for project_id, members in store.sessions_by_project().items():
        header = projects[project_id].name if project_id else "Unorganized"
        lines.append(f"[{header}]")
        for session in members:
            marker = "*" if session.id == store.current_session_id else " "
            lines.append(f" {marker}{numbering[session.id]:>3}. {session.title}")
    for i, project in enumerate(store.list_projects(), start=1):
        lines.append(f"project {i}: {project.name}")
    return "\n".join(lines)


async def handle_command(
    line: str, service: ChatService, persister: SessionPersister
) -> bool:
    """Run one slash command. Returns False when the client should exit."""
    store = service.store
    parts = line[1:].split(maxsplit=2)
    command = parts[0].lower() if parts else ""
    args = parts[1:]

    try:
        if command in ("quit", "exit"):
            return False
        if command == "help":
            print(HELP_TEXT)
        elif command == "new":
            store.new_session()
            print("Started a new chat.")
        elif command == "list":
            print(render_session_list(store))
        elif command == "select" and args:
            sessions = store.list_sessions()
            session = sessions[_parse_index(args[0], len(sessions))]
            store.select_session(session.id)
            for message in session.messages:
                print(f"{message.role}: {message.content}")
        elif command == "delete" and args:
            sessions = store.list_sessions()
            session = sessions[_parse_index(args[0], len(sessions))]
            service.cancel(session.id)
            store.delete_session(session.id)
            print(f"Deleted '{session.title}'.")
        elif command == "project" and len(args) >= 2 and args[0] == "new":
            project = store.create_project(" ".join(args[1:]))
            print(f"Created project '{project.name}'.")
        elif command == "project" and len(args) >= 2 and args[0] == "delete":
            projects = store.list_projects()
            project = projects[_parse_index(args[1], len(projects))]
            store.delete_project(project.id)
            print(f"Deleted project '{project.name}'.")
        elif command == "move" and args and store.current_session_id:
            projects = store.list_projects()
            project_id = (
                None if args[0] == "0"
                else projects[_parse_index(args[0], len(projects))].id
            )
            store.assign_project(store.current_session_id, project_id)
        else:
            print(HELP_TEXT)
    except (ValueError, KeyError) as e:
        print(f"Cannot {command}: {e}")

    await persister.save(store)
    return True


def start_stdin_reader(loop: asyncio.AbstractEventLoop) -> asyncio.Queue[str | None]:
    """
    Read stdin on a daemon thread and hand lines to the event loop.

    A daemon thread never holds up interpreter exit, so a shutdown signal
    does not wait for the user to press Enter. None marks end of input.
    """
    lines: asyncio.Queue[str | None] = asyncio.Queue()

    def read_lines() -> None:
        # The loop may already be closed when a late line arrives.
        with contextlib.suppress(RuntimeError):
            for line in sys.stdin:
                loop.call_soon_threadsafe(lines.put_nowait, line)
            loop.call_soon_threadsafe(lines.put_nowait, None)

    threading.Thread(target=read_lines, name="stdin-reader", daemon=True).start()
    return lines


async def repl(
    service: ChatService,
    persister: SessionPersister,
    renderer: TerminalRenderer,
    shutdown_event: asyncio.Event,
    lines: asyncio.Queue[str | None] | None = None,
) -> None:
    """Read lines from stdin until EOF, /quit or a shutdown signal."""
    if lines is None:
        lines = start_stdin_reader(asyncio.get_running_loop())
    while not shutdown_event.is_set():
        print("> ", end="", flush=True)
        line = await lines.get()
        if line is None:
            break

        line = line.strip()
        if not line:
            continue
        if line.startswith("/"):
            if not await handle_command(line, service, persister):
                break
            continue

        session = service.store.current_session or service.store.new_session()
        renderer.reset()
        print("assistant: ", end="", flush=True)
        await service.send_message(session.id, line)


async def main() -> None:
    """Main entry point with graceful shutdown handling."""
    config = Configuration()
    configure_logging(config.get_logging_config().get("level", "WARNING"))

    store = create_store(config)
    persister = create_persister(config)
    await persister.load(store)

    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        """Handle shutdown signals gracefully."""
        logger.info("Received shutdown signal, initiating graceful shutdown...")
        shutdown_event.set()

    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)

    async with LLMClient(config.get_llm_config()) as llm_client:
        service = ChatService(
            ChatService.ChatServiceConfig(
                store=store,
                llm_client=llm_client,
                configuration=config,
                persister=persister,
            )
        )
        renderer = TerminalRenderer(store)
        service.add_listener(renderer)
        print(HELP_TEXT)

        repl_task = asyncio.create_task(repl(service, persister, renderer, shutdown_event))
        shutdown_task = asyncio.create_task(shutdown_event.wait())
        try:
            done, pending = await asyncio.wait(
                [repl_task, shutdown_task],
                return_when=asyncio.FIRST_COMPLETED,
            )
            for task in pending:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            for task in done:
                if task is repl_task and task.exception() is not None:
                    raise task.exception()
        finally:
            async with operation_context("final_save", context={"sessions": len(store.list_sessions())}):
                await persister.save(store)
            logger.info("Application shutdown complete")


def run() -> None:
    """Console script entry point."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    run()
