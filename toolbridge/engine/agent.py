"""ToolbarAgent: runs agent turns and reconciles their output into chats.

One turn = one user message = one agent subprocess:

    1. append the user message and set is_working
    2. spawn the agent and write the composed input
    3. append an empty assistant placeholder
    4. decode stdout and apply each event to the placeholder
    5. clear is_working and release the process, whatever happened

Only one turn runs at a time. A message that arrives while a turn is
active is rejected with TurnInProgressError.

All SessionStore updates happen on the event loop, so the store sees a
single writer. abort() may be called at any time; once it returns, no
event from the aborted process reaches the store.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from toolbridge.shared.models.message import ChatMessage, MessageRole
from toolbridge.shared.models.session import Chat, SessionState, SessionStore

from .config import AgentConfig, EventCallback, fire_event
from .errors import (
    AgentSpawnError,
    ChatNotFoundError,
    InvalidMessageError,
    NoActiveChatError,
    TurnInProgressError,
)
from .events import (
    AssistantEvent,
    ResultEvent,
    StreamEvent,
    SystemEvent,
    ToolResultEvent,
    ToolUseEvent,
)
from .lifecycle import ABORTABLE_PHASES, ACTIVE_PHASES, TurnPhase, validate_transition
from .process import ProcessHandle, Spawner, spawn
from .prompt import build_message, compose_input
from .stream_decoder import decode_stream

logger = logging.getLogger(__name__)

# After the agent exits, how long to keep reading output it already wrote.
_DRAIN_GRACE_SECONDS = 0.5

# How long a process may linger after closing stdout before it is reaped.
_REAP_GRACE_SECONDS = 5.0


@dataclass
class TurnOutcome:
    """How a turn ended, as far as the agent reported it."""
    success: bool = False
    result: str = ""
    duration_ms: int | None = None
    exit_code: int | None = None
    aborted: bool = False
    session_id: str | None = None


@dataclass
class Turn:
    chat_id: str
    user_message_id: str
    started_at: float = field(default_factory=time.monotonic)
    assistant_message_id: str | None = None
    handle: ProcessHandle | None = field(default=None, repr=False)
    task: asyncio.Task | None = field(default=None, repr=False)
    outcome: TurnOutcome = field(default_factory=TurnOutcome)
    abort_requested: bool = False
    finished: bool = False
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    async def wait(self) -> TurnOutcome:
        """Wait until the turn is back to idle."""
        await self._done.wait()
        return self.outcome


class ToolbarAgent:
    """Owns the session store and the (at most one) running turn.

    Construct once at startup, call initialize(), and shutdown() at exit.
    """

    def __init__(
        self,
        config: AgentConfig,
        store: SessionStore | None = None,
        event_callback: EventCallback | None = None,
        spawner: Spawner = spawn,
    ) -> None:
        self._config = config
        self._store = store or SessionStore()
        self.event_callback = event_callback
        self._spawner = spawner
        self._phase = TurnPhase.IDLE
        self._turn: Turn | None = None
        self._process: ProcessHandle | None = None
        # chat_id -> agent session id, for --resume on the next turn
        self._resume_ids: dict[str, str] = {}
        self._background: set[asyncio.Task] = set()
        self._initialized = False

    # ── Lifecycle ──

    @property
    def config(self) -> AgentConfig:
        return self._config

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def state(self) -> SessionState:
        return self._store.state

    @property
    def phase(self) -> TurnPhase:
        return self._phase

    @property
    def current_turn(self) -> Turn | None:
        return self._turn

    @property
    def running(self) -> bool:
        return self._phase in ACTIVE_PHASES

    def initialize(self) -> None:
        """Make sure a chat exists and is active."""
        if self._initialized:
            return
        self._initialized = True
        if not self._store.state.chats:
            self.create_chat()
        logger.info(
            "ToolbarAgent initialized command=%s cwd=%s chats=%d",
            self._config.command, self._config.cwd, len(self._store.state.chats),
        )

    async def shutdown(self) -> None:
        """Abort any running turn and wait for its process to go away."""
        turn = self._turn
        handle = self._process
        self.abort()
        if handle is not None:
            await handle.shutdown()
        if turn is not None and turn.task is not None:
            await asyncio.gather(turn.task, return_exceptions=True)
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        logger.info("ToolbarAgent shut down")

    # ── Chat operations ──

    def create_chat(self) -> str:
        chat_id: str | None = None

        def _recipe(draft: SessionState) -> None:
            nonlocal chat_id
            chat_id = draft.add_chat()

        self._store.update(_recipe)
        logger.info("Created chat %s", chat_id)
        return chat_id

    def switch_chat(self, chat_id: str) -> None:
        if chat_id not in self._store.state.chats:
            raise ChatNotFoundError(chat_id)
        self._store.update(lambda draft: draft.set_active(chat_id))
        logger.info("Switched to chat %s", chat_id)

    def delete_chat(self, chat_id: str) -> None:
        if chat_id not in self._store.state.chats:
            raise ChatNotFoundError(chat_id)
        self._store.update(lambda draft: draft.remove_chat(chat_id))
        self._resume_ids.pop(chat_id, None)
        logger.info(
            "Deleted chat %s (active=%s)", chat_id, self._store.state.active_chat_id,
        )

    # ── Turns ──

    async def handle_user_message(self, message: ChatMessage) -> TurnOutcome:
        """Run a full turn for *message* and return its outcome."""
        turn = await self.begin_turn(message)
        return await turn.wait()

    async def begin_turn(self, message: ChatMessage) -> Turn:
        """Start a turn and return once the agent is streaming.

        Raises TurnInProgressError, NoActiveChatError, InvalidMessageError,
        or AgentSpawnError. InvalidMessageError is raised before any state
        change; on AgentSpawnError the turn has already returned to idle.
        """
        if self._turn is not None:
            raise TurnInProgressError(self._turn.chat_id)
        chat_id = self._store.state.active_chat_id
        if chat_id is None:
            raise NoActiveChatError()

        try:
            wire_message = build_message(compose_input(message))
        except (AttributeError, TypeError, ValueError) as exc:
            logger.warning("Rejecting message %s: %s", message.id, exc)
            raise InvalidMessageError(str(exc)) from exc

        message.role = MessageRole.USER
        turn = Turn(chat_id=chat_id, user_message_id=message.id)
        self._turn = turn
        self._transition(TurnPhase.COMPOSING)
        resume_id = self._resume_ids.get(chat_id) if self._config.resume_sessions else None

        def _start(draft: SessionState) -> None:
            draft.is_working = True
            draft.chats[chat_id].messages.append(message)

        try:
            self._store.update(_start)
            self._fire({"event": "turn_started", "chat_id": chat_id, "message_id": message.id})

            handle = await self._spawner(
                self._config,
                resume_id,
                on_exit=lambda code: self._on_process_exit(turn, code),
            )
            self._process = handle
            turn.handle = handle
            self._transition(TurnPhase.SPAWNED)
            if turn.abort_requested:
                self.abort()
                return turn

            await handle.write_input(wire_message)
            if turn.finished:
                return turn

            placeholder = ChatMessage(role=MessageRole.ASSISTANT)
            turn.assistant_message_id = placeholder.id
            self._store.update_chat(chat_id, self._append_message(placeholder))
            self._transition(TurnPhase.STREAMING)
            turn.task = asyncio.create_task(self._stream(turn))
        except AgentSpawnError as exc:
            logger.error("Turn in chat %s failed to start: %s", chat_id, exc)
            turn.outcome.result = str(exc)
            self._finish_turn(turn)
            raise
        except BaseException:
            if turn.handle is not None:
                turn.handle.kill()
            self._finish_turn(turn)
            raise
        return turn

    def abort(self) -> None:
        """Kill the running turn's agent and return to idle.

        No-op when idle. Safe to call repeatedly.
        """
        turn = self._turn
        if turn is None or turn.finished:
            return
        if self._phase not in ABORTABLE_PHASES:
            # Still spawning; begin_turn() aborts once the handle exists.
            turn.abort_requested = True
            logger.info("Abort requested while turn in chat %s is starting", turn.chat_id)
            return
        logger.info("Aborting turn in chat %s", turn.chat_id)
        if turn.handle is not None:
            turn.handle.kill()
        turn.outcome.aborted = True
        self._finish_turn(turn)

    async def _stream(self, turn: Turn) -> None:
        """Apply decoded events until the output ends or the agent exits.

        A process the agent started may inherit stdout and keep it open
        after the agent itself is gone, so EOF alone cannot end the turn.
        Once the agent has exited, output it already wrote is drained for
        a short grace period and the turn completes.
        """
        handle = turn.handle
        events = decode_stream(handle.stdout).__aiter__()
        exit_task = asyncio.ensure_future(handle.wait())
        next_task: asyncio.Future | None = None
        try:
            while not turn.finished:
                next_task = asyncio.ensure_future(events.__anext__())
                await asyncio.wait({next_task, exit_task}, return_when=asyncio.FIRST_COMPLETED)
                if turn.finished or not next_task.done():
                    break
                try:
                    event = next_task.result()
                except StopAsyncIteration:
                    next_task = None
                    return
                next_task = None
                self._apply_event(turn, event)
            if turn.finished:
                return
            await self._drain(turn, events, next_task)
            next_task = None
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Stream error in chat %s", turn.chat_id)
        finally:
            for task in (next_task, exit_task):
                if task is not None and not task.done():
                    task.cancel()
            await asyncio.gather(
                *(t for t in (next_task, exit_task) if t is not None),
                return_exceptions=True,
            )
            await events.aclose()
            if not turn.finished:
                turn.outcome.exit_code = handle.exit_code
                self._finish_turn(turn)
            self._spawn_background(self._reap(handle))

    async def _drain(self, turn: Turn, events, pending: asyncio.Future) -> None:
        """Read what an exited agent left in its pipe, within the grace period."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + _DRAIN_GRACE_SECONDS
        next_task = pending
        try:
            while not turn.finished:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, _ = await asyncio.wait({next_task}, timeout=remaining)
                if turn.finished:
                    return
                if not done:
                    break
                try:
                    event = next_task.result()
                except StopAsyncIteration:
                    return
                self._apply_event(turn, event)
                next_task = asyncio.ensure_future(events.__anext__())
            logger.warning(
                "Agent pid=%d exited but its output is still open; ending turn in chat %s",
                turn.handle.pid, turn.chat_id,
            )
        finally:
            if not next_task.done():
                next_task.cancel()
                await asyncio.gather(next_task, return_exceptions=True)

    def _apply_event(self, turn: Turn, event: StreamEvent) -> None:
        if isinstance(event, AssistantEvent):
            text = event.text()
            if text:
                self._store.update_chat(
                    turn.chat_id, self._replace_text(turn.assistant_message_id, text),
                )
        elif isinstance(event, ResultEvent):
            turn.outcome.success = event.success
            turn.outcome.result = event.result
            turn.outcome.duration_ms = event.duration_ms
            self._remember_session(turn, event.session_id)
            logger.info(
                "Turn result chat=%s success=%s duration_ms=%s",
                turn.chat_id, event.success, event.duration_ms,
            )
            self._fire({
                "event": "turn_result",
                "chat_id": turn.chat_id,
                "success": event.success,
                "result": event.result,
                "duration_ms": event.duration_ms,
            })
        elif isinstance(event, SystemEvent):
            if event.is_init:
                self._remember_session(turn, event.session_id)
                logger.info(
                    "Agent initialized chat=%s session=%s", turn.chat_id, event.session_id,
                )
                self._fire({
                    "event": "agent_initialized",
                    "chat_id": turn.chat_id,
                    "session_id": event.session_id,
                })
        elif isinstance(event, (ToolUseEvent, ToolResultEvent)):
            logger.debug("Agent %s event in chat %s", event.type, turn.chat_id)
            self._fire({"event": event.type, "chat_id": turn.chat_id, "payload": event.raw})
        else:
            logger.debug("Ignoring stream event type=%r", event.type)

    def _remember_session(self, turn: Turn, session_id: str | None) -> None:
        if not session_id:
            return
        turn.outcome.session_id = session_id
        self._resume_ids[turn.chat_id] = session_id

    def _finish_turn(self, turn: Turn) -> None:
        """COMPLETING -> IDLE. Runs exactly once per turn."""
        if turn.finished:
            return
        turn.finished = True
        self._transition(TurnPhase.COMPLETING)
        try:
            if self._process is turn.handle:
                self._process = None

            def _stop(draft: SessionState) -> None:
                draft.is_working = False

            self._store.update(_stop)
        finally:
            self._turn = None
            self._transition(TurnPhase.IDLE)
            turn._done.set()
        elapsed_ms = int((time.monotonic() - turn.started_at) * 1000)
        logger.info(
            "Turn finished chat=%s aborted=%s success=%s elapsed_ms=%d",
            turn.chat_id, turn.outcome.aborted, turn.outcome.success, elapsed_ms,
        )
        self._fire({
            "event": "turn_finished",
            "chat_id": turn.chat_id,
            "aborted": turn.outcome.aborted,
            "success": turn.outcome.success,
        })

    def _on_process_exit(self, turn: Turn, code: int | None) -> None:
        turn.outcome.exit_code = code
        self._fire({"event": "process_exited", "chat_id": turn.chat_id, "exit_code": code})

    async def _reap(self, handle: ProcessHandle) -> None:
        try:
            await asyncio.wait_for(handle.wait(), timeout=_REAP_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Agent pid=%d still running after its output ended", handle.pid)
            await handle.shutdown()

    def _transition(self, target: TurnPhase) -> None:
        validate_transition(self._phase, target)
        logger.debug("Turn phase %s -> %s", self._phase.value, target.value)
        self._phase = target

    def _fire(self, event: dict[str, Any]) -> None:
        if self.event_callback is None:
            return
        self._spawn_background(fire_event(self.event_callback, event))

    def _spawn_background(self, coro) -> None:
        try:
            task = asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ── Chat recipes ──

    @staticmethod
    def _append_message(message: ChatMessage):
        def _recipe(chat: Chat) -> None:
            chat.messages.append(message)
        return _recipe

    @staticmethod
    def _replace_text(message_id: str | None, text: str):
        def _recipe(chat: Chat) -> None:
            for i, msg in enumerate(chat.messages):
                if msg.id == message_id:
                    # Messages are shared with earlier states.
                    updated = copy.deepcopy(msg)
                    updated.set_text(text)
                    chat.messages[i] = updated
                    return
        return _recipe
