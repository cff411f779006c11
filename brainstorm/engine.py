"""Conversation engine: owns the run loop and wires the components together."""

import asyncio
import contextlib
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass

from brainstorm.context import ContextBuilder
from brainstorm.events import Event, EventChannel, EventType
from brainstorm.interjections import InterjectionMode, InterjectionQueue, validate_interjection
from brainstorm.lock import ConversationLock
from brainstorm.models import (
    Agent,
    Conversation,
    ConversationMode,
    ConversationStatus,
    Interjection,
    Message,
    MessageType,
    Turn,
    TurnQueueItem,
    TurnQueueState,
    TurnResult,
    TurnSchedule,
    TurnStatus,
)
from brainstorm.providers.base import AIProvider
from brainstorm.results import ResultAggregator
from brainstorm.secretary import Secretary
from brainstorm.state_machine import ConversationStateMachine, TurnStateMachine
from brainstorm.storage import Storage
from brainstorm.turn_executor import TurnExecutor
from brainstorm.turn_manager import TurnManager
from config.config_loader import AgentConfig, PromptsConfig

logger = logging.getLogger(__name__)

MIN_SPEED_MS = 500
# Round cap when the secretary cannot decide one
_DEFAULT_ROUNDS = 5
# Closing turns are paced at most this fast, whatever speed_ms says
_CLOSING_PACE_MS = 1000

FINISH_BROADCAST = (
    "The discussion is now wrapping up. Each participant will have one final "
    "opportunity to share brief closing thoughts before the secretary compiles "
    "the final result."
)


@dataclass
class EngineCallbacks:
    """Optional hooks for a front end. All are called synchronously."""

    on_agent_thinking: Callable[[str], None] | None = None
    on_agent_speaking: Callable[[str, str], None] | None = None
    on_stream_chunk: Callable[[str, str], None] | None = None
    on_turn_complete: Callable[[Turn, Message], None] | None = None
    on_round_complete: Callable[[int], None] | None = None
    on_error: Callable[[Exception], None] | None = None


class ConversationEngine:
    """Drives one conversation: scheduling, execution, round bookkeeping.

    ``start()``/``resume()`` run the loop until the conversation is paused,
    stopped, reset or reaches ``max_rounds``. Control methods may be called
    from other tasks while the loop runs; they cancel the in-flight turn
    through the executor and the loop notices the status change.
    """

    def __init__(
        self,
        conversation: Conversation,
        storage: Storage,
        providers: dict[str, AIProvider],
        prompts: PromptsConfig,
        events: EventChannel | None = None,
        lock: ConversationLock | None = None,
        callbacks: EngineCallbacks | None = None,
        retry_backoff_sec: float = 2.0,
        recent_messages: int = 12,
        rng: random.Random | None = None,
    ) -> None:
        if storage is None:
            raise ValueError("ConversationEngine needs a storage")
        if conversation is None:
            raise ValueError("ConversationEngine needs a conversation")

        self._conversation = conversation
        self._storage = storage
        self._providers = providers
        self._events = events or EventChannel()
        self._lock = lock
        self._callbacks = callbacks or EngineCallbacks()
        self._retry_backoff_sec = retry_backoff_sec

        cid = conversation.id
        self._agents = storage.agents_for(cid)
        self._state = ConversationStateMachine(conversation.status)
        self._state.subscribe(self._on_status)
        self._turn_manager = TurnManager(
            cid, conversation.mode, self._agents, storage, current_round=conversation.current_round, rng=rng
        )
        self._interjections = InterjectionQueue(cid, storage, self._events, current_round=conversation.current_round)
        self._executor = TurnExecutor(
            conversation, storage, providers, ContextBuilder(prompts, recent_messages), self._events
        )

        self._secretary: Secretary | None = None
        secretary_agent = storage.get_secretary(cid)
        if secretary_agent is not None:
            provider = providers.get(secretary_agent.model)
            if provider is not None:
                self._secretary = Secretary(secretary_agent, provider, storage, self._events, prompts)
            else:
                logger.warning("Secretary %s has no provider, summaries disabled", secretary_agent.name)
        self._aggregator = ResultAggregator(cid, storage, self._events, self._secretary)

        self._streaming: dict[str, str] = {}
        self._completed_in_round: set[str] = set()
        self._current_agent_id: str | None = None
        self._wake = asyncio.Event()
        self._loop_done = asyncio.Event()
        self._loop_done.set()
        self._finish_done = asyncio.Event()
        self._finish_done.set()

        logger.info("Engine ready for %s with %d agents", cid, len(self._turn_manager.turn_order()))

    # ----- lifecycle -----

    async def start(self) -> None:
        await self._drive(EventType.CONVERSATION_STARTED, fresh=True)

    async def resume(self) -> None:
        await self._drive(EventType.CONVERSATION_RESUMED, fresh=False)

    async def _drive(self, event_type: EventType, fresh: bool) -> None:
        cid = self._conversation.id
        if not self._state.can_transition(ConversationStatus.RUNNING):
            logger.warning("Cannot run %s from %s", cid, self._state.status.value)
            return
        if not self._acquire_lock():
            return

        entered = False
        self._loop_done.clear()
        try:
            if not self._state.transition(ConversationStatus.RUNNING):
                return
            entered = True
            if fresh:
                self._completed_in_round.clear()
                self._current_agent_id = None
            self._events.emit(Event(event_type, cid))
            self._emit_turn_queue()

            await self._run_loop()
        except Exception as exc:
            self._executor.abort()
            logger.exception("Run loop for %s failed", cid)
            self._report(exc)
        finally:
            if entered and self._state.is_running():
                self._state.transition(ConversationStatus.PAUSED)
                self._events.emit(Event(EventType.CONVERSATION_PAUSED, cid))
            self._loop_done.set()
            # finish() takes over a lock held by the loop
            if not self._state.is_finishing():
                self._release_lock()

    async def pause(self) -> None:
        if not self._state.can_transition(ConversationStatus.PAUSED):
            logger.warning("Cannot pause from %s", self._state.status.value)
            return
        self._executor.abort()
        self._state.transition(ConversationStatus.PAUSED)
        self._events.emit(Event(EventType.CONVERSATION_PAUSED, self._conversation.id))

    async def stop(self) -> None:
        """Complete the conversation now and build the final draft."""
        self._executor.abort()
        if not self._state.transition(ConversationStatus.COMPLETED):
            return
        await self._generate_final_result()
        self._events.emit(Event(EventType.CONVERSATION_STOPPED, self._conversation.id))

    async def finish(self) -> None:
        """Wrap up with one closing turn per participant, then complete."""
        cid = self._conversation.id
        if not self._state.can_transition(ConversationStatus.FINISHING):
            logger.warning("Cannot finish from %s", self._state.status.value)
            return

        was_running = self._state.is_running()
        if not was_running and not self._acquire_lock():
            return

        self._finish_done.clear()
        try:
            self._state.transition(ConversationStatus.FINISHING)
            if was_running:
                self._executor.abort()
                await self._loop_done.wait()
                if not self._state.is_finishing():
                    logger.info("Finishing %s was interrupted", cid)
                    return
            self._events.emit(Event(EventType.CONVERSATION_FINISHING, cid))

            message = self._storage.add_message(
                Message(
                    conversation_id=cid,
                    content=FINISH_BROADCAST,
                    round=self._conversation.current_round,
                    type=MessageType.SYSTEM,
                )
            )
            self._events.emit(Event(EventType.MESSAGE_CREATED, cid, payload=message))

            await self._run_closing_round()
            if not self._state.is_finishing():
                logger.info("Finishing %s was interrupted", cid)
                return
            await self._generate_final_result()
            if self._state.transition(ConversationStatus.COMPLETED):
                self._events.emit(Event(EventType.CONVERSATION_STOPPED, cid))
            logger.info("Conversation %s finished", cid)
        except Exception as exc:
            self._executor.abort()
            logger.exception("Finishing %s failed", cid)
            self._report(exc)
            if self._state.can_transition(ConversationStatus.COMPLETED):
                self._state.transition(ConversationStatus.COMPLETED)
        finally:
            self._release_lock()
            self._finish_done.set()

    async def _run_closing_round(self) -> None:
        cid = self._conversation.id
        participants = [a for a in self._agents if not a.is_secretary]
        if not participants:
            return

        # Closing turns get a round of their own so their ids never collide
        closing_round = self._conversation.current_round
        if self._storage.turns_for_round(cid, closing_round):
            closing_round += 1
            self._set_round(closing_round)

        self._completed_in_round.clear()
        for sequence, agent in enumerate(participants):
            if not self._state.is_finishing():
                break
            schedule = TurnSchedule(round=closing_round, sequence=sequence, agent_id=agent.id)
            result = await self._execute_turn(schedule)
            if result is not None and not result.success:
                logger.warning("Closing turn for %s failed: %s", agent.name, result.error)
            pace_ms = min(self._conversation.speed_ms, _CLOSING_PACE_MS)
            await self._sleep(pace_ms / 1000, ConversationStatus.FINISHING)

        self._completed_in_round.clear()
        # Left alone after a reset, which puts the round back to 0
        if self._state.is_finishing():
            self._set_round(closing_round + 1)

    async def reset(self) -> None:
        """Wipe turns, messages and interjections and return to idle round 0."""
        cid = self._conversation.id
        self._executor.abort()
        self._state.reset()
        await self._loop_done.wait()
        await self._finish_done.wait()

        for turn in self._storage.turns_for(cid):
            if not TurnStateMachine(turn.state).is_terminal():
                self._storage.update_turn(turn.id, state=TurnStatus.CANCELLED, error="Conversation reset")
        self._storage.delete_turns(cid)
        self._storage.delete_messages(cid)
        self._storage.delete_interjections(cid)

        if self._conversation.recommended_rounds is not None:
            # The cap came from the secretary; the next run decides again
            self._conversation.max_rounds = None
            self._conversation.recommended_rounds = None
            self._storage.update_conversation(cid, max_rounds=None, recommended_rounds=None)
        self._set_round(0)
        self._turn_manager.set_current_round(0)
        self._turn_manager.update_agents(self._agents)
        self._interjections.clear()
        self._interjections.set_current_round(0)
        self._aggregator.clear()

        self._completed_in_round.clear()
        self._current_agent_id = None
        self._streaming.clear()
        self._release_lock()

        logger.info("Conversation %s reset", cid)
        self._events.emit(Event(EventType.CONVERSATION_UPDATED, cid, payload=self.get_conversation()))
        self._events.emit(Event(EventType.CONVERSATION_RESET, cid))

    # ----- controls -----

    def add_interjection(self, content: str, immediate: bool = False) -> Interjection | None:
        valid, error = validate_interjection(content)
        if not valid:
            logger.info("Rejected interjection: %s", error)
            self._report(ValueError(error))
            return None
        mode = InterjectionMode.IMMEDIATE if immediate else InterjectionMode.NEXT_ROUND
        return self._interjections.add_interjection(content, mode)

    def force_next_speaker(self, agent_id: str) -> None:
        if not any(a.id == agent_id and not a.is_secretary for a in self._agents):
            logger.warning("Cannot force unknown agent %s", agent_id)
            return
        self._turn_manager.queue_agent(agent_id, "User requested")

    def set_speed_ms(self, speed_ms: int) -> None:
        self._conversation.speed_ms = max(MIN_SPEED_MS, speed_ms)
        self._storage.update_conversation(self._conversation.id, speed_ms=self._conversation.speed_ms)

    # ----- queries -----

    def get_status(self) -> ConversationStatus:
        return self._state.status

    def get_current_round(self) -> int:
        return self._conversation.current_round

    def get_agents(self) -> list[Agent]:
        return list(self._agents)

    def get_streaming_content(self, agent_id: str) -> str:
        return self._streaming.get(agent_id, "")

    def get_conversation(self) -> Conversation:
        return self._conversation

    def get_result_aggregator(self) -> ResultAggregator:
        return self._aggregator

    @property
    def events(self) -> EventChannel:
        return self._events

    def is_locked_by_other(self) -> bool:
        if self._lock is None:
            return False
        return self._lock.is_locked_by_other(self._conversation.id)

    def turn_queue(self) -> TurnQueueState | None:
        """Who has spoken, who is speaking and who is waiting in the displayed round.

        Running and paused conversations show the round in progress; idle and
        completed ones show the last round played.
        """
        participants = [a for a in self._agents if not a.is_secretary]
        if not participants:
            return None

        status = self._state.status
        round_number = self._conversation.current_round
        if status not in (ConversationStatus.RUNNING, ConversationStatus.PAUSED, ConversationStatus.FINISHING):
            round_number = max(0, round_number - 1)

        turns = self._storage.turns_for_round(self._conversation.id, round_number)
        completed = {t.agent_id for t in turns if t.state is TurnStatus.COMPLETED}
        running = [t for t in turns if t.state is TurnStatus.RUNNING]
        current = running[-1].agent_id if running else self._current_agent_id

        queue = []
        for index, agent in enumerate(participants):
            if agent.id in completed:
                item_status = "completed"
            elif agent.id == current:
                item_status = "current"
            else:
                item_status = "waiting"
            queue.append(TurnQueueItem(agent_id=agent.id, agent_name=agent.name, status=item_status, order=index))

        return TurnQueueState(
            conversation_id=self._conversation.id,
            round=round_number,
            current_index=min(len(completed), len(participants)),
            total_agents=len(participants),
            queue=queue,
        )

    # ----- run loop -----

    async def _run_loop(self) -> None:
        while self._state.is_running():
            max_rounds = self._conversation.max_rounds
            if max_rounds is not None and self._conversation.current_round >= max_rounds:
                logger.info("Reached %d rounds, stopping", max_rounds)
                await self.stop()
                break

            if self._turn_manager.agent_count and self._turn_manager.is_round_complete():
                # A round whose last slot was skipped or cancelled
                await self._on_round_complete()
                continue

            for interjection in self._interjections.drain_immediate():
                self._interjections.mark_processed(interjection.id)

            schedule = self._turn_manager.get_next_agent()
            if schedule is None:
                logger.info("No agents to schedule, leaving the loop")
                break

            result = await self._execute_turn(schedule)
            if result is None:
                continue

            if result.cancelled:
                continue

            if not result.success:
                self._report(RuntimeError(result.error or "Turn failed"))
                self._turn_manager.reschedule(schedule)
                await self._sleep(self._retry_backoff_sec)
                continue

            if self._turn_manager.is_round_complete():
                await self._on_round_complete()

            await self._sleep(self._conversation.speed_ms / 1000)

    async def _execute_turn(self, schedule: TurnSchedule) -> TurnResult | None:
        """Run one scheduled turn. None when the slot is skipped."""
        cid = self._conversation.id
        existing = self._turn_manager.get_turn(schedule)
        if existing is not None and TurnStateMachine(existing.state).is_terminal():
            logger.info("Skipping %s turn r%d s%d", existing.state.value, schedule.round, schedule.sequence)
            return None

        agent = next((a for a in self._agents if a.id == schedule.agent_id), None)
        if agent is None:
            logger.warning("Scheduled agent %s not found, skipping", schedule.agent_id)
            return None

        self._current_agent_id = agent.id
        self._emit_turn_queue()
        turn = self._turn_manager.create_turn(schedule)

        if self._callbacks.on_agent_thinking:
            self._callbacks.on_agent_thinking(agent.id)
        self._events.emit(Event(EventType.AGENT_THINKING, cid, agent_id=agent.id))

        self._streaming[agent.id] = ""

        def on_chunk(chunk: str) -> None:
            self._streaming[agent.id] = self._streaming.get(agent.id, "") + chunk
            if self._callbacks.on_stream_chunk:
                self._callbacks.on_stream_chunk(agent.id, chunk)
            self._events.emit(Event(EventType.STREAM_CHUNK, cid, agent_id=agent.id, content=chunk))

        result = await self._executor.execute(turn, agent, on_chunk)

        self._streaming.pop(agent.id, None)
        self._events.emit(Event(EventType.STREAM_COMPLETE, cid, agent_id=agent.id))
        if result.success:
            self._completed_in_round.add(agent.id)
        self._current_agent_id = None
        self._emit_turn_queue()
        self._events.emit(Event(EventType.AGENT_IDLE, cid, agent_id=agent.id))

        if result.success and result.message is not None:
            if self._callbacks.on_agent_speaking:
                self._callbacks.on_agent_speaking(agent.id, result.message.content)
            if self._callbacks.on_turn_complete:
                completed = self._storage.get_turn(turn.id) or turn
                self._callbacks.on_turn_complete(completed, result.message)
        return result

    async def _on_round_complete(self) -> None:
        cid = self._conversation.id
        round_number = self._conversation.current_round

        self._completed_in_round.clear()
        self._set_round(round_number + 1)
        self._turn_manager.advance_round()
        self._interjections.set_current_round(round_number + 1)
        self._emit_turn_queue()

        if self._secretary is not None:
            try:
                summary = await self._secretary.generate_round_summary(round_number)
                if summary:
                    message = self._storage.add_message(
                        Message(
                            conversation_id=cid,
                            content=summary,
                            round=round_number,
                            type=MessageType.SUMMARY,
                            agent_id=self._secretary.agent.id,
                        )
                    )
                    self._events.emit(Event(EventType.MESSAGE_CREATED, cid, payload=message))
            except Exception:
                logger.warning("Secretary summary for round %d failed", round_number, exc_info=True)

            conversation = self._conversation
            if round_number == 0 and conversation.max_rounds is None and conversation.recommended_rounds is None:
                await self._decide_rounds(round_number)

        await self._aggregator.incremental_update(round_number)
        self._interjections.mark_all_processed()

        logger.info("Round %d of %s complete", round_number, cid)
        self._events.emit(Event(EventType.ROUND_COMPLETE, cid, round=round_number))
        if self._callbacks.on_round_complete:
            self._callbacks.on_round_complete(round_number)

    async def _decide_rounds(self, round_number: int) -> None:
        """Let the secretary cap an open-ended conversation after its first round."""
        cid = self._conversation.id
        try:
            rounds, reasoning = await self._secretary.decide_rounds(self._conversation, round_number)
        except Exception:
            logger.warning("Round decision failed, defaulting to %d rounds", _DEFAULT_ROUNDS, exc_info=True)
            self._apply_round_decision(_DEFAULT_ROUNDS)
            return

        self._apply_round_decision(rounds)
        self._events.emit(Event(EventType.CONVERSATION_ROUNDS_DECIDED, cid, content=reasoning, payload=rounds))
        message = self._storage.add_message(
            Message(
                conversation_id=cid,
                content=reasoning or str(rounds),
                round=round_number,
                type=MessageType.SYSTEM,
                agent_id=self._secretary.agent.id,
            )
        )
        self._events.emit(Event(EventType.MESSAGE_CREATED, cid, payload=message))
        logger.info("Secretary planned %d rounds for %s: %s", rounds, cid, reasoning)

    def _apply_round_decision(self, rounds: int) -> None:
        self._conversation.recommended_rounds = rounds
        self._conversation.max_rounds = rounds
        self._storage.update_conversation(self._conversation.id, recommended_rounds=rounds, max_rounds=rounds)

    async def _generate_final_result(self) -> None:
        try:
            await self._aggregator.generate_final_draft(self._conversation)
        except Exception as exc:
            logger.exception("Final result for %s failed", self._conversation.id)
            self._report(exc)

    # ----- helpers -----

    def _on_status(self, status: ConversationStatus) -> None:
        self._conversation.status = status
        self._storage.update_conversation(self._conversation.id, status=status)
        self._wake.set()

    def _set_round(self, round_number: int) -> None:
        self._conversation.current_round = round_number
        self._storage.update_conversation(self._conversation.id, current_round=round_number)

    async def _sleep(self, seconds: float, status: ConversationStatus = ConversationStatus.RUNNING) -> None:
        """Sleep, waking early as soon as the conversation leaves ``status``."""
        if seconds <= 0:
            return
        self._wake.clear()
        if self._state.status is not status:
            return
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)

    def _acquire_lock(self) -> bool:
        if self._lock is None:
            return True
        cid = self._conversation.id
        if self._lock.acquire(cid):
            return True
        logger.warning("Conversation %s is running in another process", cid)
        self._report(RuntimeError("This conversation is running in another process"))
        self._events.emit(Event(EventType.CONVERSATION_LOCK_DENIED, cid))
        return False

    def _release_lock(self) -> None:
        if self._lock is not None:
            self._lock.release(self._conversation.id)

    def _report(self, error: Exception) -> None:
        if self._callbacks.on_error:
            self._callbacks.on_error(error)

    def _emit_turn_queue(self) -> None:
        state = self.turn_queue()
        if state is not None:
            self._events.emit(Event(EventType.TURN_QUEUE_UPDATED, self._conversation.id, payload=state))

    # ----- factories -----

    @classmethod
    def create(
        cls,
        subject: str,
        goal: str,
        agents: list[AgentConfig],
        storage: Storage,
        providers: dict[str, AIProvider],
        prompts: PromptsConfig,
        mode: ConversationMode = ConversationMode.ROUND_ROBIN,
        max_rounds: int | None = None,
        speed_ms: int = 2000,
        include_secretary: bool = True,
        opening_statement: str | None = None,
        events: EventChannel | None = None,
        **engine_kwargs,
    ) -> "ConversationEngine":
        """Persist a new conversation with its roster and return its engine.

        With ``include_secretary`` and no secretary in ``agents``, one is
        added on the first participant's model.
        """
        if storage is None:
            raise ValueError("ConversationEngine.create needs a storage")

        events = events or EventChannel()
        conversation = storage.create_conversation(
            Conversation(
                subject=subject,
                goal=goal,
                mode=ConversationMode(mode),
                speed_ms=speed_ms,
                max_rounds=max_rounds,
                opening_statement=opening_statement,
            )
        )

        roster = [a for a in agents if include_secretary or not a.is_secretary]
        if include_secretary and roster and not any(a.is_secretary for a in roster):
            roster.append(
                AgentConfig(name="Secretary", role="Neutral Secretary", model=roster[0].model, is_secretary=True)
            )
        for order, config in enumerate(roster):
            storage.add_agent(
                Agent(
                    conversation_id=conversation.id,
                    name=config.name,
                    role=config.role,
                    expertise=config.expertise,
                    model=config.model,
                    is_secretary=config.is_secretary,
                    order=order,
                )
            )
        events.emit(Event(EventType.CONVERSATION_CREATED, conversation.id, payload=conversation))

        engine = cls(conversation, storage, providers, prompts, events=events, **engine_kwargs)
        if opening_statement:
            message = storage.add_message(
                Message(conversation_id=conversation.id, content=opening_statement, round=0, type=MessageType.OPENING)
            )
            events.emit(Event(EventType.MESSAGE_CREATED, conversation.id, payload=message))
        return engine

    @classmethod
    def load(
        cls,
        conversation_id: str,
        storage: Storage,
        providers: dict[str, AIProvider],
        prompts: PromptsConfig,
        lock: ConversationLock | None = None,
        **engine_kwargs,
    ) -> "ConversationEngine | None":
        """Rebuild an engine for a stored conversation.

        A conversation left ``running`` by a dead process is recovered to
        ``paused`` with its running turns marked failed. When another process
        holds the lock the conversation is loaded untouched.
        """
        conversation = storage.get_conversation(conversation_id)
        if conversation is None:
            return None

        if conversation.status is ConversationStatus.RUNNING:
            if lock is not None and lock.is_locked_by_other(conversation_id):
                logger.info("Conversation %s is running in another process, loading read-only", conversation_id)
            else:
                failed = storage.mark_running_turns_failed(conversation_id, "Interrupted")
                if failed:
                    logger.info("Marked %d interrupted turn(s) as failed", failed)
                conversation = storage.update_conversation(conversation_id, status=ConversationStatus.PAUSED)
                logger.info("Recovered %s to paused", conversation_id)

        return cls(conversation, storage, providers, prompts, lock=lock, **engine_kwargs)
