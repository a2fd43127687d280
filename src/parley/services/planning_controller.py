"""Session control surface.

A ``PlanningController`` owns one planning session's replica state and the
task consuming its event stream. Control calls never raise for misuse;
they record an error message on the state instead.
"""

import asyncio
import logging
from typing import Callable, Optional

from parley.exceptions import ParleyError
from parley.models.plan_request import HistoryEntry, PlanRequest
from parley.models.planning_session import SessionStatus
from parley.models.session_event import SessionEvent
from parley.services.plan_client import PlanSource
from parley.services.session_reducer import SessionState, apply_event


logger = logging.getLogger(__name__)

NOT_CONFIGURED_MESSAGE = "Please configure prompt and models first"
CANNOT_START_MESSAGE = "Cannot start planning at this time"
CANNOT_INTERVENE_MESSAGE = "Cannot intervene at this time"
CANNOT_CONFIGURE_MESSAGE = "Cannot configure while planning"
STREAM_ENDED_MESSAGE = "Planning stream ended unexpectedly"

EventListener = Callable[[SessionEvent, SessionState], None]

_STARTABLE = (SessionStatus.IDLE, SessionStatus.CONFIGURING)
_INTERVENABLE = (SessionStatus.PLANNING, SessionStatus.STOPPED)


class PlanningController:
    """Drives one planning session through an event source.

    Args:
        source: Produces the event stream for each start or intervention
        on_event: Optional listener called after each event is applied
    """

    def __init__(self, source: PlanSource, on_event: Optional[EventListener] = None):
        self.source = source
        self.on_event = on_event
        self._state = SessionState()
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def configure(
        self,
        prompt: Optional[str] = None,
        model_a: Optional[str] = None,
        model_b: Optional[str] = None
    ) -> SessionState:
        """Set any of prompt and models; omitted values are kept."""
        if self._state.status is SessionStatus.PLANNING:
            return self._fail(CANNOT_CONFIGURE_MESSAGE)

        update = {"status": SessionStatus.CONFIGURING, "error": None}
        if prompt is not None:
            update["prompt"] = prompt
        if model_a is not None:
            update["model_a"] = model_a
        if model_b is not None:
            update["model_b"] = model_b
        self._state = self._state.model_copy(update=update)
        return self._state

    async def start(self) -> SessionState:
        """Start a negotiation and consume its events until it ends."""
        if not self._state.is_configured:
            return self._fail(NOT_CONFIGURED_MESSAGE)
        if self._state.status not in _STARTABLE:
            return self._fail(CANNOT_START_MESSAGE)

        self._state = self._state.model_copy(update={
            "status": SessionStatus.PLANNING,
            "messages": (),
            "current_plan": None,
            "agent_a_agreed": False,
            "agent_b_agreed": False,
            "rounds": 0,
            "error": None,
            "streaming_message_id": None,
        })
        logger.info(f"Starting negotiation between {self._state.model_a} and {self._state.model_b}")
        return await self._run(self._request())

    async def intervene(self, text: str) -> SessionState:
        """Inject a human message and resume the negotiation."""
        if self._state.status not in _INTERVENABLE or not text.strip():
            return self._fail(CANNOT_INTERVENE_MESSAGE)

        # An intervention supersedes the in-flight stream
        await self._cancel_running()

        self._state = self._state.model_copy(update={
            "status": SessionStatus.PLANNING,
            "messages": self._state.sealed_messages,
            "streaming_message_id": None,
            "error": None,
        })
        logger.info(f"Human intervention after {len(self._state.sealed_messages)} turns")
        return await self._run(self._request(human_input=text))

    def stop(self) -> SessionState:
        """Cancel the in-flight negotiation, leaving the session stopped."""
        if self._state.status is not SessionStatus.PLANNING:
            logger.debug(f"Ignoring stop in status {self._state.status.value}")
            return self._state
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._apply(SessionEvent.terminated())
        return self._state

    def reset(self) -> SessionState:
        """Abort any in-flight negotiation and return to an idle, empty session."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self._state = SessionState()
        return self._state

    def _request(self, human_input: Optional[str] = None) -> PlanRequest:
        state = self._state
        return PlanRequest(
            prompt=state.prompt,
            model_a=state.model_a,
            model_b=state.model_b,
            history=[HistoryEntry(role=m.role, content=m.content) for m in state.sealed_messages],
            human_input=human_input,
        )

    async def _run(self, request: PlanRequest) -> SessionState:
        task = asyncio.create_task(self._consume(request))
        self._task = task
        try:
            await task
        except asyncio.CancelledError:
            # The caller was cancelled, not the consumer
            task.cancel()
            raise
        return self._state

    async def _consume(self, request: PlanRequest) -> None:
        try:
            async for event in self.source.stream(request):
                if asyncio.current_task() is not self._task:
                    break
                self._apply(event)
        except asyncio.CancelledError:
            # stop() and reset() cancel this task; the session state already says so
            logger.debug("Event stream consumer cancelled")
        except ParleyError as e:
            logger.error(f"Planning stream failed: {e}")
            self._apply(SessionEvent.failed(str(e)))
        else:
            if asyncio.current_task() is self._task and self._state.status is SessionStatus.PLANNING:
                self._apply(SessionEvent.failed(STREAM_ENDED_MESSAGE))

    def _apply(self, event: SessionEvent) -> None:
        if self._state.status is not SessionStatus.PLANNING:
            logger.debug(f"Dropping {event.type.value} event in status {self._state.status.value}")
            return
        self._state = apply_event(self._state, event)
        if self.on_event is not None:
            self.on_event(event, self._state)

    def _fail(self, message: str) -> SessionState:
        logger.warning(message)
        self._state = self._state.model_copy(update={"error": message})
        return self._state

    async def _cancel_running(self) -> None:
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                logger.debug("Previous event stream cancelled")
