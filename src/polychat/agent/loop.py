"""
Agentic loop controller.

Drives repeated model call -> tool calls -> model call cycles for one chat
request until the model answers without tools or the iteration budget is
spent. Backend failures end the request early:

    IDLE -> REQUESTING -> STREAMING -> TOOL_EXECUTING -> REQUESTING ...
                                    -> DONE | FAILED

Text is forwarded to the caller as it streams; tool-call fragments are
buffered until complete. Every turn produced along the way is appended to
the conversation store as soon as it exists.
"""

import asyncio
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable

import structlog

from ..config import Settings, get_settings
from ..errors import ContextLengthError, StreamTimeoutError
from ..llm.base import BaseLLM, ModelRequest, TextPart, ToolCall, ToolDefinition, Turn
from ..llm.deltas import NormalizedEvent, TextDelta, ToolCallAssembler
from ..store.base import ConversationStore, InMemoryConversationStore
from ..tools.base import ToolResult
from .events import StreamEvent
from .retry import RetryPolicy
from .tokens import estimate_definitions_tokens
from .truncation import (
    TruncationOptions,
    escalated_limit,
    is_context_length_error,
    truncate_context,
)

if TYPE_CHECKING:
    from ..tools.registry import ToolRegistry

logger = structlog.get_logger()

KNOWLEDGE_HEADER = "\n\nKnowledge Sources:\n"

FINAL_ANSWER_INSTRUCTION = (
    "You have reached the maximum number of tool calls for this request. "
    "Do not call any more tools. Using the information gathered so far, "
    "give your final answer to the user now."
)

FALLBACK_MESSAGE = (
    "I wasn't able to finish this request within the allowed number of steps. "
    "Please try again, or break the request into smaller parts."
)

CONTEXT_TOO_LONG_MESSAGE = (
    "The conversation is too long for this model's context window, "
    "even after removing older messages. Please start a new conversation."
)


class LoopState(str, Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    TOOL_EXECUTING = "tool_executing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class LoopOutcome:
    """Summary of a finished request, as collected by :meth:`AgenticLoop.run`."""

    state: LoopState
    text: str
    model_calls: int
    iterations: int
    notes: list[str] = field(default_factory=list)
    error: str | None = None
    history: list[Turn] = field(default_factory=list)


@dataclass
class _Reply:
    """One model call's reconstructed output."""

    assembler: ToolCallAssembler
    error: BaseException | None = None

    @property
    def text(self) -> str:
        return self.assembler.text


@dataclass
class IterationState:
    """Mutable state of one request across its model calls and tool rounds."""

    conversation_id: str
    history: list[Turn]
    use_tools: bool
    system_prompt: str | None
    emit: Callable[[StreamEvent], None]
    state: LoopState = LoopState.IDLE
    model_calls: int = 0
    iterations: int = 0
    final_text: str = ""
    error: str | None = None
    notes: list[str] = field(default_factory=list)
    trim_noted: bool = False
    over_budget_noted: bool = False

    def note(self, content: str, **data: Any) -> None:
        self.notes.append(content)
        self.emit(StreamEvent.note(content, **data))


def _inject_knowledge(turn: Turn, knowledge: str) -> Turn:
    """A copy of a user turn with a knowledge block appended to its text."""
    block = KNOWLEDGE_HEADER + knowledge
    if isinstance(turn.content, str):
        return turn.with_content(turn.content + block)

    parts = list(turn.content)
    for i, part in enumerate(parts):
        if isinstance(part, TextPart):
            parts[i] = TextPart(part.text + block)
            break
    else:
        parts.insert(0, TextPart(block.lstrip("\n")))
    return turn.with_content(parts)


class AgenticLoop:
    """Runs chat requests against one model backend with tool support."""

    def __init__(
        self,
        llm: BaseLLM,
        tool_registry: "ToolRegistry | None" = None,
        store: ConversationStore | None = None,
        settings: Settings | None = None,
        *,
        max_iterations: int | None = None,
        truncation_options: TruncationOptions | None = None,
        chunk_timeout: float | None = None,
        backend_retry: RetryPolicy | None = None,
        context_retry: RetryPolicy | None = None,
        continue_on_disconnect: bool = True,
    ):
        from ..tools.registry import get_tool_registry

        self.settings = settings or get_settings()
        self.llm = llm
        self.tool_registry = tool_registry or get_tool_registry()
        self.store = store or InMemoryConversationStore()

        self.max_iterations = (
            self.settings.max_iterations if max_iterations is None else max_iterations
        )
        self.chunk_timeout = (
            self.settings.chunk_timeout_seconds if chunk_timeout is None else chunk_timeout
        )
        self.truncation_options = truncation_options or TruncationOptions(
            reserve_for_response=self.settings.reserve_for_response,
            reserve_for_system_prompt=self.settings.reserve_for_system_prompt,
            reserve_for_tool_definitions=self.settings.reserve_for_tool_definitions,
            safety_buffer_tokens=self.settings.safety_buffer_tokens,
            minimum_turns_to_keep=self.settings.minimum_turns_to_keep,
            max_turn_tokens=self.settings.max_turn_tokens,
        )
        self.backend_retry = backend_retry or RetryPolicy(
            max_attempts=self.settings.backend_max_attempts,
            backoff_seconds=self.settings.backend_backoff_seconds,
            name="model call",
        )
        self.context_retry = context_retry or RetryPolicy(
            max_attempts=self.settings.context_max_retries + 1,
            backoff_seconds=0,
            name="context truncation",
        )
        self.continue_on_disconnect = continue_on_disconnect

        self._tasks: set[asyncio.Task] = set()

    @property
    def context_limit(self) -> int:
        return self.settings.context_limit_for(self.llm.model)

    def stream(
        self,
        conversation_id: str,
        history: list[Turn],
        *,
        use_tools: bool = True,
        system_prompt: str | None = None,
        additional_context: str | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Process a request and yield caller-facing events.

        ``history`` ends with the new user turn; it is persisted by the loop,
        earlier turns are assumed to be stored already. The stream is
        ``start``, then ``chunk`` and ``note`` events, then exactly one
        ``end`` or ``error``.
        """
        queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        run = IterationState(
            conversation_id=conversation_id,
            history=list(history),
            use_tools=use_tools,
            system_prompt=system_prompt,
            emit=queue.put_nowait,
        )
        return self._consume(run, queue, additional_context)

    async def run(
        self,
        conversation_id: str,
        history: list[Turn],
        *,
        use_tools: bool = True,
        system_prompt: str | None = None,
        additional_context: str | None = None,
    ) -> LoopOutcome:
        """Process a request to completion and summarize it."""
        queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        run = IterationState(
            conversation_id=conversation_id,
            history=list(history),
            use_tools=use_tools,
            system_prompt=system_prompt,
            emit=queue.put_nowait,
        )
        async for _ in self._consume(run, queue, additional_context):
            pass

        return LoopOutcome(
            state=run.state,
            text=run.final_text,
            model_calls=run.model_calls,
            iterations=run.iterations,
            notes=list(run.notes),
            error=run.error,
            history=list(run.history),
        )

    async def _consume(
        self,
        run: IterationState,
        queue: "asyncio.Queue[StreamEvent]",
        additional_context: str | None,
    ) -> AsyncIterator[StreamEvent]:
        task = asyncio.create_task(self._drive(run, additional_context))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        try:
            while True:
                event = await queue.get()
                yield event
                if event.is_terminal:
                    break
        finally:
            if not task.done():
                if self.continue_on_disconnect:
                    logger.info(
                        "Caller disconnected, finishing request in background",
                        conversation_id=run.conversation_id,
                    )
                else:
                    task.cancel()

    async def wait_closed(self) -> None:
        """Wait for requests still running after their caller went away."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def _record(self, run: IterationState, turn: Turn, stored: Turn | None = None) -> None:
        """Add a turn to the working history and persist it."""
        run.history.append(turn)
        await self.store.append(run.conversation_id, stored or turn)

    async def _drive(self, run: IterationState, additional_context: str | None) -> None:
        run.emit(StreamEvent.start(run.conversation_id))
        logger.info(
            "Processing request",
            conversation_id=run.conversation_id,
            provider=self.llm.provider_name,
            model=self.llm.model,
            turns=len(run.history),
        )

        try:
            if run.history and run.history[-1].role == "user":
                incoming = run.history.pop()
                working = _inject_knowledge(incoming, additional_context) if additional_context else incoming
                await self._record(run, working, stored=incoming)

            tools = await self._tool_definitions(run)
            final_text = await self._iterate(run, tools)

            run.state = LoopState.DONE
            run.final_text = final_text
            await self._record(run, Turn.assistant(final_text, type="final"))

            logger.info(
                "Request complete",
                conversation_id=run.conversation_id,
                model_calls=run.model_calls,
                iterations=run.iterations,
            )
            run.emit(StreamEvent.end(
                run.conversation_id,
                final_text,
                modelCalls=run.model_calls,
                iterations=run.iterations,
            ))

        except asyncio.CancelledError:
            run.state = LoopState.FAILED
            run.error = "Request cancelled"
            run.emit(StreamEvent.failure(run.conversation_id, run.error))
            raise

        except ContextLengthError as e:
            run.state = LoopState.FAILED
            run.error = str(e)
            logger.error("Context too long", conversation_id=run.conversation_id)
            run.emit(StreamEvent.failure(run.conversation_id, run.error))

        except Exception as e:
            run.state = LoopState.FAILED
            run.error = f"Model request failed: {e}"
            logger.error(
                "Request failed",
                conversation_id=run.conversation_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            run.emit(StreamEvent.failure(run.conversation_id, run.error))

    async def _tool_definitions(self, run: IterationState) -> list[ToolDefinition] | None:
        if not run.use_tools:
            return None
        await self.tool_registry.load()
        definitions = self.tool_registry.list_definitions()

        definition_tokens = estimate_definitions_tokens(definitions)
        if definition_tokens > self.truncation_options.reserve_for_tool_definitions:
            logger.warning(
                "Tool definitions exceed their reserved budget",
                tokens=definition_tokens,
                reserved=self.truncation_options.reserve_for_tool_definitions,
                tool_count=len(definitions),
            )
        return definitions or None

    async def _iterate(self, run: IterationState, tools: list[ToolDefinition] | None) -> str:
        while True:
            if run.iterations >= self.max_iterations:
                return await self._final_answer(run, tools)

            reply = await self._call_model(run, tools)

            if reply.error is not None:
                if reply.text:
                    logger.warning(
                        "Model stream failed, keeping partial answer",
                        conversation_id=run.conversation_id,
                        error=str(reply.error),
                    )
                    return reply.text
                raise reply.error

            assembler = reply.assembler
            if not tools or not assembler.has_tool_calls:
                return assembler.text

            valid = assembler.valid_calls
            explanation = assembler.describe_invalid()

            if not valid:
                logger.warning(
                    "Every tool call was rejected",
                    conversation_id=run.conversation_id,
                    rejected=len(assembler.invalid_calls),
                )
                separator = "\n\n" if assembler.text else ""
                run.emit(StreamEvent.chunk(separator + explanation))
                return assembler.text + separator + explanation

            run.iterations += 1
            if assembler.text:
                await self._record(run, Turn.assistant(assembler.text, type="interim"))
            if explanation:
                run.note(explanation, rejectedToolCalls=len(assembler.invalid_calls))

            await self._execute_tools(run, valid, explanation)

    async def _execute_tools(self, run: IterationState, calls: list[ToolCall], explanation: str) -> None:
        run.state = LoopState.TOOL_EXECUTING
        await self._record(run, Turn.assistant(explanation, calls, type="tool_invocations"))

        logger.info(
            "Executing tool calls",
            conversation_id=run.conversation_id,
            tools=[c.name for c in calls],
        )
        batch = asyncio.gather(
            *(self.tool_registry.execute(c.name, c.arguments, call_id=c.id) for c in calls),
            return_exceptions=True,
        )

        # Started tools always run to completion, even when the request is cancelled
        try:
            results = await asyncio.shield(batch)
        except asyncio.CancelledError:
            logger.info(
                "Request cancelled, waiting for running tools",
                conversation_id=run.conversation_id,
            )
            results = await batch
            await self._record_results(run, calls, results)
            raise

        await self._record_results(run, calls, results)

    async def _record_results(self, run: IterationState, calls: list[ToolCall], results: list[Any]) -> None:
        # Appended in the order the model declared the calls
        for call, result in zip(calls, results):
            if isinstance(result, BaseException):
                result = ToolResult(
                    success=False,
                    error=str(result) or type(result).__name__,
                    call_id=call.id,
                    tool_name=call.name,
                )
            await self._record(run, Turn.tool_result(
                call.id,
                call.name,
                result.to_payload(),
                is_error=not result.success,
                type="tool_results",
                truncated=result.truncated,
            ))

    async def _final_answer(self, run: IterationState, tools: list[ToolDefinition] | None) -> str:
        """One call with tool use switched off after the iteration budget is spent.

        Definitions are still sent because the history holds tool turns,
        which some backends reject when no tools are declared.
        """
        logger.warning(
            "Iteration budget exhausted, requesting final answer",
            conversation_id=run.conversation_id,
            max_iterations=self.max_iterations,
        )

        text = ""
        try:
            reply = await self._call_model(
                run,
                tools,
                tool_choice="none" if tools else None,
                extra_turns=[Turn.user(FINAL_ANSWER_INSTRUCTION, transient=True)],
            )
            text = reply.text
            if reply.error is not None and not text:
                raise reply.error
        except Exception as e:
            logger.error(
                "Final answer call failed",
                conversation_id=run.conversation_id,
                error=str(e),
            )

        if not text.strip():
            text = FALLBACK_MESSAGE
            run.emit(StreamEvent.chunk(text))
        return text

    def _prepare_turns(
        self,
        run: IterationState,
        context_limit: int,
        tools_enabled: bool,
        extra_turns: list[Turn],
    ) -> list[Turn]:
        options = self.truncation_options
        if not tools_enabled:
            options = replace(options, reserve_for_tool_definitions=0)

        result = truncate_context(run.history + extra_turns, context_limit, options)
        report = result.report

        if report.removed_turn_count and not run.trim_noted:
            run.trim_noted = True
            run.note(
                f"History was trimmed, {report.removed_turn_count} older turns removed "
                "to fit the model's context window.",
                removedTurns=report.removed_turn_count,
            )
        if report.over_budget and not run.over_budget_noted:
            run.over_budget_noted = True
            run.note(
                "The most recent messages alone exceed the model's context budget; "
                "the reply may fail or be cut short.",
                tokenEstimate=report.final_token_estimate,
                availableTokens=report.available_tokens,
            )

        return result.turns

    def _is_transport_retryable(self, error: BaseException) -> bool:
        return not is_context_length_error(error) and self.llm.is_retryable(error)

    async def _call_model(
        self,
        run: IterationState,
        tools: list[ToolDefinition] | None,
        tool_choice: str | None = None,
        extra_turns: list[Turn] | None = None,
    ) -> _Reply:
        """One logical model call.

        Context-length errors are retried with a smaller budget, each of
        those attempts retrying transient transport errors on its own.
        """
        run.model_calls += 1
        base_limit = self.context_limit

        async def with_budget(context_attempt: int) -> _Reply:
            limit = escalated_limit(base_limit, context_attempt)
            if context_attempt:
                logger.warning(
                    "Retrying with reduced context",
                    conversation_id=run.conversation_id,
                    attempt=context_attempt,
                    context_limit=limit,
                )
            request = ModelRequest(
                turns=self._prepare_turns(run, limit, tools is not None, extra_turns or []),
                tools=tools,
                tool_choice=tool_choice,
                system_prompt=run.system_prompt,
            )
            return await self.backend_retry.run(
                lambda attempt: self._stream_once(run, request),
                self._is_transport_retryable,
            )

        try:
            return await self.context_retry.run(with_budget, is_context_length_error)
        except Exception as e:
            if is_context_length_error(e):
                raise ContextLengthError(CONTEXT_TOO_LONG_MESSAGE) from e
            raise

    def _apply(self, run: IterationState, assembler: ToolCallAssembler, event: NormalizedEvent) -> None:
        assembler.apply(event)
        if isinstance(event, TextDelta) and event.content:
            run.emit(StreamEvent.chunk(event.content))

    async def _stream_once(self, run: IterationState, request: ModelRequest) -> _Reply:
        """Stream one backend attempt.

        Raises if the attempt fails before any event was accepted, so it can
        be retried. Once something was received a failure is returned with
        whatever was assembled, since streamed text cannot be taken back.
        """
        run.state = LoopState.REQUESTING
        normalizer = self.llm.normalizer()
        assembler = ToolCallAssembler()
        received = False

        events = self.llm.send(request)
        iterator = events.__aiter__()
        try:
            while True:
                try:
                    raw = await asyncio.wait_for(iterator.__anext__(), timeout=self.chunk_timeout)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    raise StreamTimeoutError(self.chunk_timeout) from None

                for event in normalizer.feed(raw):
                    self._apply(run, assembler, event)
                if not received:
                    received = True
                    run.state = LoopState.STREAMING

            for event in normalizer.finish():
                self._apply(run, assembler, event)

        except Exception as e:
            if not received:
                raise
            logger.warning(
                "Model stream interrupted",
                conversation_id=run.conversation_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return _Reply(assembler, error=e)

        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as close_error:
                    logger.debug("Error closing model stream", error=str(close_error))

        return _Reply(assembler)
