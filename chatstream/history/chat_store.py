"""
Conversation Store

Authoritative in-memory mapping from session id to ordered messages, plus the
project labels sessions may point at. All mutation happens on the event loop
that runs the exchanges, so every operation here is synchronous and atomic
with respect to other coroutines.

Streaming replies are merged under an exchange-token guard: each session
remembers the token of its single in-flight exchange, and a merge carrying
any other token is a no-op. Starting a new exchange on a session freezes the
previous placeholder and rotates the token, so a superseded stream that is
still draining can no longer touch the transcript.
"""
from __future__ import annotations

import uuid
from collections.abc import Iterable

import structlog

from chatstream.history.models import (
    DEFAULT_TITLE,
    Attachment,
    ChatSession,
    Message,
    Project,
)

logger = structlog.get_logger(__name__)

ERROR_PREFIX = "Error: "
TITLE_MAX_CHARS = 30


class ConversationStore:
    """Sessions (newest first), projects and the current selection."""

    def __init__(
        self,
        default_title: str = DEFAULT_TITLE,
        title_max_chars: int = TITLE_MAX_CHARS,
    ):
        self.default_title = default_title
        self.title_max_chars = title_max_chars
        self._sessions: dict[str, ChatSession] = {}
        self._order: list[str] = []
        self._projects: dict[str, Project] = {}
        self.current_session_id: str | None = None
        # Bumped on every mutation so persistence can tell what changed.
        self.revision = 0

    # ---------- Loading ----------

    def load(
        self, sessions: Iterable[ChatSession], projects: Iterable[Project] = ()
    ) -> None:
        """Replace contents with persisted state; the first session becomes current."""
        self._sessions = {}
        self._order = []
        for session in sessions:
            if session.id in self._sessions:
                logger.warning("Skipping duplicate stored session", session_id=session.id)
                continue
            frozen = session.storage_form()
            self._sessions[frozen.id] = frozen
            self._order.append(frozen.id)
        self._projects = {p.id: p for p in projects}
        self.current_session_id = self._order[0] if self._order else None
        if self.current_session_id is None:
            self.new_session()
        self._touch()

    # ---------- Sessions ----------

    def new_session(self, project_id: str | None = None) -> ChatSession:
        """Create an empty session at the top of the list and select it."""
        session = ChatSession(title=self.default_title, project_id=project_id)
        self._sessions[session.id] = session
        self._order.insert(0, session.id)
        self.current_session_id = session.id
        self._touch()
        logger.info("Created session", session_id=session.id)
        return session

    def get_session(self, session_id: str) -> ChatSession | None:
        return self._sessions.get(session_id)

    @property
    def current_session(self) -> ChatSession | None:
        if self.current_session_id is None:
            return None
        return self._sessions.get(self.current_session_id)

    def list_sessions(self) -> list[ChatSession]:
        return [self._sessions[sid] for sid in self._order]

    def select_session(self, session_id: str) -> ChatSession:
        session = self._require_session(session_id)
        self.current_session_id = session_id
        self._touch()
        return session

    def delete_session(self, session_id: str) -> ChatSession | None:
        """
        Remove a session.

        If it was current, the first remaining session is selected; when none
        remain a fresh one is created. Returns the current session afterwards.
        """
        if session_id not in self._sessions:
            return self.current_session
        del self._sessions[session_id]
        self._order.remove(session_id)
        logger.info("Deleted session", session_id=session_id)

        if self.current_session_id == session_id:
            if self._order:
                self.current_session_id = self._order[0]
            else:
                self.new_session()
        self._touch()
        return self.current_session

    # ---------- Projects ----------

    def create_project(self, name: str) -> Project:
        name = name.strip()
        if not name:
            raise ValueError("project name must not be empty")
        project = Project(name=name)
        self._projects[project.id] = project
        self._touch()
        return project

    def list_projects(self) -> list[Project]:
        return list(self._projects.values())

    def get_project(self, project_id: str) -> Project | None:
        return self._projects.get(project_id)

    def delete_project(self, project_id: str) -> bool:
        """Delete a project; its sessions survive as unorganized."""
        if project_id not in self._projects:
            return False
        for session in self._sessions.values():
            if session.project_id == project_id:
                session.project_id = None
        del self._projects[project_id]
        self._touch()
        logger.info("Deleted project", project_id=project_id)
        return True

    def assign_project(self, session_id: str, project_id: str | None) -> None:
        session = self._require_session(session_id)
        if project_id is not None and project_id not in self._projects:
            raise KeyError(f"Unknown project: {project_id}")
        session.project_id = project_id
        self._touch()

    def sessions_by_project(self) -> dict[str | None, list[ChatSession]]:
        """Group sessions by project id; ``None`` holds the unorganized ones."""
        groups: dict[str | None, list[ChatSession]] = {None: []}
        for project_id in self._projects:
            groups[project_id] = []
        for session in self.list_sessions():
            key = session.project_id if session.project_id in self._projects else None
            groups[key].append(session)
        return groups

    # ---------- Exchanges ----------

    def start_exchange(
        self,
        session_id: str,
        content: str,
        attachments: Iterable[Attachment] = (),
    ) -> str:
        """
        Append the user message and an empty assistant placeholder.

        Any exchange still in flight on this session is superseded first.
        Returns the new exchange token.
        """
        session = self._require_session(session_id)
        if session.active_exchange_id is not None:
            self.cancel_exchange(session_id)

        if not session.messages:
            session.title = self.make_title(content)
        session.append_message(
            Message(role="user", content=content, attachments=tuple(attachments))
        )

        exchange_id = str(uuid.uuid4())
        session.append_message(Message.placeholder())
        session.active_exchange_id = exchange_id
        self._touch()
        logger.debug(
            "Exchange started", session_id=session_id, exchange_id=exchange_id
        )
        return exchange_id

    def make_title(self, content: str) -> str:
        title = content.strip()[: self.title_max_chars]
        return title or self.default_title

    def is_active(self, session_id: str, exchange_id: str) -> bool:
        session = self._sessions.get(session_id)
        return session is not None and session.active_exchange_id == exchange_id

    def merge_assistant_delta(
        self, session_id: str, exchange_id: str, text: str
    ) -> bool:
        """
        Replace the placeholder's content with the full snapshot ``text``.

        No-op (returns False) when the session is gone or the exchange has
        been superseded.
        """
        index = self._placeholder_index(session_id, exchange_id)
        if index is None:
            return False
        session = self._sessions[session_id]
        session.replace_message_at(index, session.messages[index].with_content(text))
        self._touch()
        return True

    def finalize_exchange(
        self, session_id: str, exchange_id: str, text: str
    ) -> bool:
        """Freeze the placeholder with the complete reply."""
        index = self._placeholder_index(session_id, exchange_id)
        if index is None:
            return False
        session = self._sessions[session_id]
        session.replace_message_at(index, session.messages[index].finalized(text))
        session.active_exchange_id = None
        self._touch()
        return True

    def fail_exchange(
        self,
        session_id: str,
        exchange_id: str,
        description: str,
        partial_text: str | None = None,
    ) -> bool:
        """
        Finish the exchange with a visible error message.

        ``partial_text`` is the reply accumulated before the failure and
        defaults to whatever the placeholder last received. Empty partial
        text means the placeholder becomes the error message; otherwise it is
        frozen with that text and the error follows it.
        """
        index = self._placeholder_index(session_id, exchange_id)
        if index is None:
            return False
        session = self._sessions[session_id]
        error_message = Message(role="assistant", content=f"{ERROR_PREFIX}{description}")
        placeholder = session.messages[index]
        text = placeholder.content if partial_text is None else partial_text
        if text == "":
            session.replace_message_at(index, error_message)
        else:
            session.replace_message_at(index, placeholder.finalized(text))
            session.append_message(error_message)
        session.active_exchange_id = None
        self._touch()
        return True

    def cancel_exchange(self, session_id: str) -> bool:
        """Freeze whatever the in-flight placeholder holds and drop its token."""
        session = self._sessions.get(session_id)
        if session is None or session.active_exchange_id is None:
            return False
        last = session.last_message
        if last is not None and last.is_pending:
            session.replace_message_at(-1, last.finalized())
        logger.info(
            "Exchange superseded",
            session_id=session_id,
            exchange_id=session.active_exchange_id,
        )
        session.active_exchange_id = None
        self._touch()
        return True

    def request_history(self, session_id: str) -> list[Message]:
        """Messages to send upstream: everything except the pending placeholder."""
        session = self._require_session(session_id)
        return [m for m in session.messages if not m.is_pending]

    # ---------- Internals ----------

    def _placeholder_index(self, session_id: str, exchange_id: str) -> int | None:
        session = self._sessions.get(session_id)
        if session is None:
            logger.debug("Merge for missing session ignored", session_id=session_id)
            return None
        if session.active_exchange_id != exchange_id:
            logger.debug(
                "Merge for superseded exchange ignored",
                session_id=session_id,
                exchange_id=exchange_id,
            )
            return None
        last = session.last_message
        if last is None or last.role != "assistant" or not last.is_pending:
            return None
        return len(session.messages) - 1

    def _require_session(self, session_id: str) -> ChatSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"Unknown session: {session_id}")
        return session

    def _touch(self) -> None:
        self.revision += 1
