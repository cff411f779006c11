"""Runs a single agent turn: streamed provider call, cooperative cancellation, turn bookkeeping."""

import asyncio
import contextlib
import logging
from collections.abc import Callable

from brainstorm.context import ContextBuilder
from brainstorm.events import Event, EventChannel, EventType
from brainstorm.models import Agent, Conversation, Message, MessageType, Turn, TurnResult, TurnStatus, now_ms
from brainstorm.providers.base import AIProvider, ChatMessage, ProviderError
from brainstorm.state_machine import TurnStateMachine
from brainstorm.storage import Storage

logger = logging.getLogger(__name__)

# Rough token estimate when the API reports no usage
_CHARS_PER_TOKEN = 4


class TurnCancelled(Exception):
    """Raised inside the executor when the active turn was aborted."""


class TurnExecutor:
    """Executes one turn at a time against the agent's provider.

    ``abort()`` sets the cancellation token of the in-flight call. The stream
    stops at its next suspension point, no further chunks reach ``on_chunk``
    and the turn ends ``cancelled`` rather than ``failed``.
    """

    def __init__(
        self,
        conversation: Conversation,
        storage: Storage,
        providers: dict[str, AIProvider],
        context_builder: ContextBuilder,
        events: EventChannel,
    ) -> None:
        self._conversation = conversation
        self._storage = storage
        self._providers = providers
        self._context_builder = context_builder
        self._events = events
        self._cancel: asyncio.Event | None = None

    def is_executing(self) -> bool:
        return self._cancel is not None

    def abort(self) -> None:
        if self._cancel is not None:
            logger.info("Aborting in-flight turn")
            self._cancel.set()

    async def execute(
        self,
        turn: Turn,
        agent: Agent,
        on_chunk: Callable[[str], None] | None = None,
    ) -> TurnResult:
        machine = TurnStateMachine(turn.state)
        if not machine.transition(TurnStatus.RUNNING):
            return TurnResult(success=False, error=f"Turn {turn.id} cannot run from state {turn.state.value}")

        cancel = asyncio.Event()
        self._cancel = cancel
        conversation_id = self._conversation.id

        self._storage.update_turn(turn.id, state=TurnStatus.RUNNING, error=None, started_at=now_ms())
        self._events.emit(Event(EventType.TURN_STARTED, conversation_id, agent_id=agent.id, payload=turn))

        try:
            provider = self._providers.get(agent.model)
            if provider is None:
                raise ProviderError(agent.model or agent.name, f"No provider configured for agent {agent.name}")

            messages = self._build_context(agent)
            content, tokens = await self._stream_until_cancelled(provider, messages, cancel, on_chunk)

            if not content.strip():
                raise ProviderError(provider.name(), "Empty response from provider")

            message = self._storage.add_message(
                Message(
                    conversation_id=conversation_id,
                    content=content,
                    round=turn.round,
                    type=MessageType.RESPONSE,
                    turn_id=turn.id,
                    agent_id=agent.id,
                )
            )
            machine.transition(TurnStatus.COMPLETED)
            completed = self._storage.update_turn(
                turn.id, state=TurnStatus.COMPLETED, tokens_used=tokens, ended_at=now_ms()
            )

            self._events.emit(Event(EventType.TURN_COMPLETED, conversation_id, agent_id=agent.id, payload=completed))
            self._events.emit(Event(EventType.MESSAGE_CREATED, conversation_id, agent_id=agent.id, payload=message))
            logger.info("Turn r%d s%d by %s completed (%d tokens)", turn.round, turn.sequence, agent.name, tokens)
            return TurnResult(success=True, tokens_used=tokens, message=message)

        except TurnCancelled:
            self._mark_cancelled(machine, turn)
            return TurnResult(success=False, error="Turn cancelled", cancelled=True)

        except asyncio.CancelledError:
            # The surrounding task was cancelled outright
            self._mark_cancelled(machine, turn)
            raise

        except Exception as exc:
            if cancel.is_set():
                self._mark_cancelled(machine, turn)
                return TurnResult(success=False, error="Turn cancelled", cancelled=True)

            error = str(exc) or type(exc).__name__
            machine.transition(TurnStatus.FAILED)
            failed = self._storage.update_turn(turn.id, state=TurnStatus.FAILED, error=error, ended_at=now_ms())
            self._events.emit(Event(EventType.TURN_FAILED, conversation_id, agent_id=agent.id, payload=failed))
            logger.warning("Turn r%d s%d by %s failed: %s", turn.round, turn.sequence, agent.name, error)
            return TurnResult(success=False, error=error)

        finally:
            self._cancel = None

    async def _stream_until_cancelled(
        self,
        provider: AIProvider,
        messages: list[ChatMessage],
        cancel: asyncio.Event,
        on_chunk: Callable[[str], None] | None,
    ) -> tuple[str, int]:
        """Consume the stream in its own task and race it against the token."""
        consumer = asyncio.create_task(self._consume(provider, messages, cancel, on_chunk))
        waiter = asyncio.create_task(cancel.wait())
        try:
            done, _ = await asyncio.wait({consumer, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()

        if consumer not in done:
            consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer
            raise TurnCancelled()

        content, tokens = consumer.result()
        if cancel.is_set():
            raise TurnCancelled()
        return content, tokens

    async def _consume(
        self,
        provider: AIProvider,
        messages: list[ChatMessage],
        cancel: asyncio.Event,
        on_chunk: Callable[[str], None] | None,
    ) -> tuple[str, int]:
        parts: list[str] = []
        tokens: int | None = None
        async for chunk in provider.stream(messages, cancel):
            if cancel.is_set():
                break
            if chunk.done:
                tokens = chunk.tokens_used
                continue
            if not chunk.content:
                continue
            parts.append(chunk.content)
            if on_chunk is not None:
                on_chunk(chunk.content)

        content = "".join(parts)
        if tokens is None:
            tokens = len(content) // _CHARS_PER_TOKEN
        return content, tokens

    def _build_context(self, agent: Agent) -> list[ChatMessage]:
        conversation_id = self._conversation.id
        draft = self._storage.get_draft(conversation_id)
        return self._context_builder.build(
            conversation=self._conversation,
            agent=agent,
            agents=self._storage.agents_for(conversation_id),
            messages=self._storage.messages_for(conversation_id),
            interjections=self._storage.unprocessed_interjections(conversation_id),
            secretary_summary=draft.summary if draft and draft.summary else None,
        )

    def _mark_cancelled(self, machine: TurnStateMachine, turn: Turn) -> None:
        machine.transition(TurnStatus.CANCELLED)
        self._storage.update_turn(turn.id, state=TurnStatus.CANCELLED, error="Cancelled by user", ended_at=now_ms())
        logger.info("Turn r%d s%d cancelled", turn.round, turn.sequence)

    async def retry(self, turn_id: str) -> TurnResult:
        """Re-run a failed turn by id."""
        turn = self._storage.get_turn(turn_id)
        if turn is None or turn.state is not TurnStatus.FAILED:
            return TurnResult(success=False, error="Turn not found or not in failed state")

        agent = self._storage.get_agent(turn.agent_id)
        if agent is None:
            return TurnResult(success=False, error="Agent not found")

        return await self.execute(turn, agent)
