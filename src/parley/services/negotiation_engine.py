"""Negotiation engine driving the two-agent turn loop.

One call to ``run`` is one turn-loop invocation: it optionally appends a
human intervention, then alternates agent turns until both agents agree,
the round cap is hit, a provider call fails, or the run is cancelled.
Events are pushed to an ``emit`` coroutine in order; ``negotiate`` wraps the
same loop as an async generator backed by an ``EventChannel``.
"""

import asyncio
import logging
import time
from typing import AsyncIterator, Optional

from opentelemetry.trace import Status, StatusCode

from parley.exceptions import TransportError
from parley.lib.config import ParleyConfig
from parley.lib.logging_config import AuditLogger, get_audit_logger
from parley.lib.metrics import MetricsCollector, NegotiationMetrics, get_metrics_collector
from parley.lib.observability import get_tracer
from parley.models.plan_request import PlanRequest
from parley.models.planning_session import Party, PlanningSession, SessionStatus, new_message_id
from parley.models.session_event import SessionEvent
from parley.services.completion_provider import CompletionProvider
from parley.services.conversation_assembler import build_conversation_messages
from parley.services.event_channel import EventChannel, EventSink
from parley.services.response_parser import extract_current_plan, is_agreement, parse_agent_response


logger = logging.getLogger(__name__)

MAX_ROUNDS_MESSAGE = "Maximum rounds reached without agreement"
DEFAULT_AGREED_PLAN = "Plan agreed upon."
DEFAULT_MAX_ROUNDS = 20
DEFAULT_TURN_DELAY_SECONDS = 0.5


class NegotiationEngine:
    """Runs the turn loop for one planning session at a time per call.

    The engine holds no per-session state; every ``run`` works on the
    ``PlanningSession`` it is given.
    """

    def __init__(
        self,
        provider: CompletionProvider,
        api_key: str,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        turn_delay_seconds: float = DEFAULT_TURN_DELAY_SECONDS,
        channel_max_size: int = 256,
        metrics: Optional[MetricsCollector] = None,
        audit_logger: Optional[AuditLogger] = None
    ):
        self.provider = provider
        self.api_key = api_key
        self.max_rounds = max_rounds
        self.turn_delay_seconds = turn_delay_seconds
        self.channel_max_size = channel_max_size
        self.metrics = metrics or get_metrics_collector()
        self.audit_logger = audit_logger or get_audit_logger()
        self.tracer = get_tracer()

    @classmethod
    def from_config(
        cls,
        provider: CompletionProvider,
        config: ParleyConfig,
        api_key: Optional[str] = None
    ) -> "NegotiationEngine":
        """Build an engine from the negotiation and provider settings."""
        return cls(
            provider=provider,
            api_key=api_key or config.provider.api_key or "",
            max_rounds=config.negotiation.max_rounds,
            turn_delay_seconds=config.negotiation.turn_delay_seconds,
            channel_max_size=config.negotiation.channel_max_size,
        )

    @staticmethod
    def create_session(request: PlanRequest) -> PlanningSession:
        """Rebuild the session a request resumes from."""
        return PlanningSession.from_history(
            prompt=request.prompt,
            model_a=request.model_a,
            model_b=request.model_b,
            history=request.history_dicts(),
        )

    async def negotiate(self, request: PlanRequest) -> AsyncIterator[SessionEvent]:
        """Run one turn loop for ``request``, yielding events as they occur."""
        session = self.create_session(request)
        async for event in self.stream(session, request.human_input):
            yield event

    def stream(self, session: PlanningSession, human_input: Optional[str] = None) -> EventChannel:
        """Open an event channel whose producer runs the loop on ``session``.

        Closing the channel, or cancelling the task iterating it, cancels
        the loop and leaves ``session`` stopped.
        """
        return EventChannel(
            lambda emit: self.run(session, emit, human_input),
            max_size=self.channel_max_size,
        )

    async def run(
        self,
        session: PlanningSession,
        emit: EventSink,
        human_input: Optional[str] = None
    ) -> SessionStatus:
        """Execute one turn-loop invocation.

        Args:
            session: Session to advance; mutated in place
            emit: Coroutine receiving each event in order
            human_input: Optional intervention appended before the loop

        Returns:
            The session status when the loop ended

        Raises:
            asyncio.CancelledError: When the run is cancelled; the session is
                left stopped with its sealed turns intact
        """
        started = time.monotonic()
        outcome = "stopped"
        resumed = bool(session.turns)
        session.transition_to(SessionStatus.PLANNING)
        if self.metrics:
            self.metrics.record_negotiation_started(session.session_id, resumed)
        self.audit_logger.log_session_event(
            "negotiation_started",
            session.session_id,
            action="resume" if resumed else "start",
            metadata={"model_a": session.model_a, "model_b": session.model_b, "rounds": session.rounds},
        )

        with self.tracer.start_as_current_span(
            "parley.negotiation",
            attributes={
                "parley.session_id": session.session_id,
                "parley.model_a": session.model_a,
                "parley.model_b": session.model_b,
                "parley.resumed": resumed,
            },
        ) as span:
            try:
                outcome = await self._turn_loop(session, emit, human_input)
            except asyncio.CancelledError:
                session.transition_to(SessionStatus.STOPPED)
                logger.info(f"Negotiation {session.session_id} cancelled after {len(session.turns)} turns")
                raise
            except TransportError as e:
                # The consumer went away; nobody is left to receive an error event
                session.transition_to(SessionStatus.STOPPED)
                logger.info(f"Negotiation {session.session_id} lost its consumer: {e}")
            except Exception as e:
                outcome = "error"
                detail = str(e) or type(e).__name__
                logger.error(f"Negotiation {session.session_id} failed: {detail}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, detail))
                session.transition_to(SessionStatus.ERROR, detail)
                await self._emit_quietly(emit, SessionEvent.failed(detail))
            finally:
                span.set_attribute("parley.outcome", outcome)
                span.set_attribute("parley.rounds", session.rounds)
                self._record_finished(session, outcome, started)

        return session.status

    async def _turn_loop(
        self,
        session: PlanningSession,
        emit: EventSink,
        human_input: Optional[str]
    ) -> str:
        if human_input:
            turn = session.add_turn(Party.HUMAN, human_input)
            await emit(SessionEvent.human_message(human_input, turn.turn_id))
            session.clear_agreement()

        current = session.next_party()

        while not session.both_agreed:
            if session.rounds >= self.max_rounds:
                logger.warning(f"Negotiation {session.session_id} hit the round cap ({self.max_rounds})")
                session.transition_to(SessionStatus.ERROR, MAX_ROUNDS_MESSAGE)
                await emit(SessionEvent.failed(MAX_ROUNDS_MESSAGE))
                return "exhausted"

            await self._take_turn(session, current, emit)

            if session.both_agreed:
                plan = extract_current_plan(session.turns) or DEFAULT_AGREED_PLAN
                session.current_plan = plan
                session.transition_to(SessionStatus.AGREED)
                logger.info(f"Negotiation {session.session_id} agreed after {session.rounds} rounds")
                await emit(SessionEvent.agreement_reached(plan, session.rounds))
                return "agreed"

            current = current.opponent()
            if current is Party.AGENT_A:
                session.rounds += 1
                await emit(SessionEvent.round_count(session.rounds))

            if self.turn_delay_seconds > 0:
                await asyncio.sleep(self.turn_delay_seconds)

        return "agreed"

    async def _take_turn(self, session: PlanningSession, party: Party, emit: EventSink) -> None:
        """Stream, parse and seal one agent turn, updating agreement flags."""
        model = session.model_for(party)
        message_id = new_message_id(party)
        await emit(SessionEvent.turn_started(party, message_id))

        messages = build_conversation_messages(session.prompt, session.turns, party)

        async def relay(fragment: str) -> None:
            await emit(SessionEvent.content_delta(party, fragment, message_id))

        started = time.monotonic()
        with self.tracer.start_as_current_span(
            "parley.turn",
            attributes={
                "parley.party": party.value,
                "parley.model": model,
                "parley.sequence": len(session.turns),
            },
        ) as span:
            if self.metrics:
                with self.metrics.time_provider_call(model):
                    full_text = await self.provider.stream_completion(self.api_key, model, messages, relay)
            else:
                full_text = await self.provider.stream_completion(self.api_key, model, messages, relay)

            parsed = parse_agent_response(full_text)
            action = parsed.tool_call.type
            span.set_attribute("parley.action", action.value)

        flags = (session.agent_a_agreed, session.agent_b_agreed)
        session.add_turn(party, full_text, tool=action, turn_id=message_id)
        if is_agreement(parsed):
            session.set_agreed(party)
        else:
            # Only the opponent's earlier agreement is withdrawn
            session.set_agreed(party.opponent(), False)
        try:
            await emit(SessionEvent.action_classified(party, action, message_id))
        except BaseException:
            # A turn whose tool event never reached the consumer is not sealed
            session.turns.pop()
            session.agent_a_agreed, session.agent_b_agreed = flags
            raise

        execution_time_ms = int((time.monotonic() - started) * 1000)
        if self.metrics:
            self.metrics.record_agent_turn(party.value, action.value)
        self.audit_logger.log_agent_event(
            "turn_sealed",
            session.session_id,
            party=party.value,
            model=model,
            action=action.value,
            execution_time_ms=execution_time_ms,
            metadata={"rounds": session.rounds, "sequence": len(session.turns) - 1},
        )
        logger.debug(f"{party.label} ({model}) sealed a {action.value} turn in {execution_time_ms}ms")

    async def _emit_quietly(self, emit: EventSink, event: SessionEvent) -> None:
        try:
            await emit(event)
        except TransportError:
            logger.debug(f"Dropped {event.type.value} event: consumer is gone")

    def _record_finished(self, session: PlanningSession, outcome: str, started: float) -> None:
        duration_ms = int((time.monotonic() - started) * 1000)
        if self.metrics:
            self.metrics.record_negotiation_finished(NegotiationMetrics(
                session_id=session.session_id,
                outcome=outcome,
                rounds=session.rounds,
                turn_count=len(session.turns),
                duration_ms=duration_ms,
            ))
        self.audit_logger.log_session_event(
            "negotiation_finished",
            session.session_id,
            result=outcome,
            metadata={"rounds": session.rounds, "turns": len(session.turns), "duration_ms": duration_ms},
        )
