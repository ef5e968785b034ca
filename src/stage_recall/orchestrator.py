"""Turn orchestrator for stage_recall.

Runs one conversational turn end to end:

1. Classify the memory intent (pure, synchronous)
2. Concurrently assemble context, load preferences and read the surfacing
   cooldown
3. Decide whether a pattern observation may be surfaced
4. Render the system prompt and plan the token budget
5. Make the single generation call
6. Record surfacing and queue post-turn work in the background

Only the generation call may raise; every other failure falls back to a
typed default and is logged.
"""

from __future__ import annotations

import asyncio
import functools
from typing import Any, Awaitable, Callable, Protocol, TypeVar

from loguru import logger
from pydantic import BaseModel, Field

from .config import RecallConfig
from .context_assembler import ContextAssembler
from .formatting import format_context
from .interfaces import Generator, MessageHistoryStore, PreferenceStore
from .memory_intent import MemoryIntentClassifier
from .models import (
    ContextBundle,
    ConversationTurn,
    MemoryIntentResult,
    MemoryPreferences,
    NoRecallBundle,
    Role,
    StageContext,
    StageGates,
    SurfaceStyle,
    SurfacingDecision,
    TokenBudgetPlan,
)
from .surfacing import (
    SurfacingPolicy,
    SurfacingTracker,
    count_pattern_evidence,
    user_asked_for_pattern,
)
from .token_budget import MIN_CEILING, TokenBudgetManager
from .work_queue import BackgroundTaskQueue

T = TypeVar("T")


class TurnRequest(BaseModel):
    """Everything known about the incoming user message."""

    session_id: str
    user_id: str
    stage: int
    message_text: str
    turn_count: int = 1
    emotional_intensity: float = Field(default=5.0, ge=0.0, le=10.0)
    session_duration_minutes: float | None = None
    is_first_turn: bool = False
    relationship_id: str | None = None
    user_name: str | None = None
    gates: StageGates | None = None
    # Prior messages, oldest first, without the current one. Loaded from
    # the history store when omitted.
    history: list[ConversationTurn] | None = None
    base_system_prompt: str = ""
    ceiling: int | None = Field(default=None, ge=MIN_CEILING)


class PreparedTurn(BaseModel):
    intent: MemoryIntentResult
    bundle: ContextBundle
    surfacing: SurfacingDecision
    system_prompt: str
    plan: TokenBudgetPlan


class TurnResult(PreparedTurn):
    response: str


PostTurnJob = Callable[[TurnRequest, TurnResult], Awaitable[Any]]


class PromptBuilder(Protocol):
    def build(self, request: TurnRequest, bundle: ContextBundle) -> str:
        """Render the system prompt for this turn."""
        ...


_SURFACING_GUIDANCE = {
    SurfaceStyle.SILENT: (
        "- Do not name patterns or reference past sessions explicitly\n"
        "- Let remembered context inform your empathy silently"
    ),
    SurfaceStyle.TENTATIVE: (
        '- Tentative observations allowed: "I\'m wondering if..." or '
        '"Does this connect to..."\n'
        "- Never state patterns as facts"
    ),
    SurfaceStyle.EXPLICIT: (
        "- Explicit pattern observations allowed with evidence\n"
        '- Frame collaboratively: "I\'ve noticed X coming up, does that resonate?"\n'
        "- Reference specific examples when naming patterns"
    ),
}


class DefaultPromptBuilder:
    """Appends intensity and memory-usage guidance to the base prompt."""

    def build(self, request: TurnRequest, bundle: ContextBundle) -> str:
        intent = bundle.intent
        surfacing = bundle.surfacing
        lines = [request.base_system_prompt.strip()] if request.base_system_prompt else []

        lines.append(
            f"Stage: {request.stage} | Turn: {request.turn_count} | "
            f"Emotional intensity: {request.emotional_intensity:g}/10"
        )
        if intent.safety_override:
            lines.append(
                "CRITICAL: The user is at very high intensity. Stay present and "
                "validate. This is not the moment for insight or memory recall."
            )
        elif intent.caution_advised:
            lines.append(
                "CAUTION ADVISED: The user is at high intensity. Prioritize "
                "validation and presence over insight."
            )

        style = surfacing.style if surfacing.should_surface else SurfaceStyle.SILENT
        guidance = ["MEMORY USAGE:", _SURFACING_GUIDANCE[style]]
        if surfacing.should_surface and surfacing.requires_consent:
            guidance.append("- Ask before sharing an observation about a pattern")
        lines.append("\n".join(guidance))

        return "\n\n".join(lines)


class TurnOrchestrator:
    """Coordinates one turn from classification to generation."""

    def __init__(
        self,
        classifier: MemoryIntentClassifier,
        assembler: ContextAssembler,
        budget: TokenBudgetManager,
        surfacing_policy: SurfacingPolicy,
        tracker: SurfacingTracker,
        generator: Generator,
        preference_store: PreferenceStore | None = None,
        history_store: MessageHistoryStore | None = None,
        prompt_builder: PromptBuilder | None = None,
        work_queue: BackgroundTaskQueue | None = None,
        post_turn_jobs: dict[str, PostTurnJob] | None = None,
        config: RecallConfig | None = None,
    ):
        self._classifier = classifier
        self._assembler = assembler
        self._budget = budget
        self._surfacing = surfacing_policy
        self._tracker = tracker
        self._generator = generator
        self._preferences = preference_store
        self._history = history_store
        self._prompt_builder = prompt_builder or DefaultPromptBuilder()
        self._work_queue = work_queue
        self._post_turn_jobs = post_turn_jobs or {}
        self._config = config or RecallConfig()

    async def prepare_turn(self, request: TurnRequest) -> PreparedTurn:
        """Build the bounded generation payload without calling the model.

        Raises:
            ValueError: If the budget configuration cannot hold the protected
                recent turns
        """
        intent = self._classifier.classify(
            request.stage,
            request.emotional_intensity,
            request.message_text,
            request.turn_count,
            session_duration_minutes=request.session_duration_minutes,
            is_first_turn=request.is_first_turn,
        )

        (bundle, preferences), last_surfaced, history = await asyncio.gather(
            self._assemble(request, intent),
            self._guard(
                "surfacing cooldown",
                self._tracker.last_surfaced(request.session_id, request.user_id),
                None,
            ),
            self._guard("history", self._load_history(request), []),
        )

        if bundle is None:
            bundle = NoRecallBundle(
                intent=intent,
                stage_context=StageContext(
                    stage=request.stage,
                    session_id=request.session_id,
                    user_id=request.user_id,
                    user_name=request.user_name,
                    gates=request.gates,
                ),
            )

        evidence = getattr(bundle, "evidence", None)
        surfacing = self._surfacing.decide(
            request.stage,
            request.turn_count,
            user_asked=user_asked_for_pattern(request.message_text),
            user_opted_in=bool(preferences and preferences.pattern_insights),
            evidence_count=count_pattern_evidence(evidence),
            last_surfaced_turn=last_surfaced,
        )
        bundle = bundle.model_copy(update={"surfacing": surfacing})

        system_prompt = self._prompt_builder.build(request, bundle)
        full_history = list(history) + [
            ConversationTurn(
                role=Role.USER,
                content=request.message_text,
                stage=request.stage,
                emotional_intensity=request.emotional_intensity,
            )
        ]
        plan = self._budget.plan(
            system_prompt,
            full_history,
            format_context(bundle),
            ceiling=request.ceiling,
        )

        logger.info(
            f"Turn prepared for session {request.session_id}: "
            f"intent={intent.intent.value}, depth={intent.depth.value}, "
            f"surface={surfacing.style.value if surfacing.should_surface else 'no'}, "
            f"tokens={plan.total_tokens}"
        )
        return PreparedTurn(
            intent=intent,
            bundle=bundle,
            surfacing=surfacing,
            system_prompt=system_prompt,
            plan=plan,
        )

    async def run_turn(self, request: TurnRequest) -> TurnResult:
        """Prepare the turn, generate the reply and queue post-turn work.

        Raises:
            Whatever the generator raises; nothing is recorded in that case
        """
        prepared = await self.prepare_turn(request)
        plan = prepared.plan

        response = await self._generator.generate(
            plan.system_content,
            plan.messages,
            min(self._config.generation_max_tokens, plan.output_reservation),
        )
        result = TurnResult(**dict(prepared), response=response)

        if prepared.surfacing.should_surface:
            await self._tracker.record(
                request.session_id, request.user_id, request.turn_count
            )
        self._submit_post_turn(request, result)
        return result

    def _submit_post_turn(self, request: TurnRequest, result: TurnResult) -> None:
        if not self._post_turn_jobs:
            return
        if self._work_queue is None:
            logger.warning("Post-turn jobs configured without a work queue, skipping")
            return
        for name, job in self._post_turn_jobs.items():
            self._work_queue.submit(name, functools.partial(job, request, result))

    async def _assemble(
        self, request: TurnRequest, intent: MemoryIntentResult
    ) -> tuple[ContextBundle | None, MemoryPreferences | None]:
        preferences = await self._guard(
            "preferences", self._load_preferences(request.user_id), None
        )
        assembly = self._config.assembly
        bundle = await self._guard(
            "context assembly",
            self._assembler.assemble(
                request.session_id,
                request.user_id,
                request.stage,
                intent,
                message_text=request.message_text,
                relationship_id=request.relationship_id,
                preferences=preferences,
                gates=request.gates,
                user_name=request.user_name,
            ),
            None,
            timeout=2 * assembly.fetch_timeout_seconds
            + assembly.evidence_timeout_seconds,
        )
        return bundle, preferences

    async def _load_preferences(self, user_id: str) -> MemoryPreferences | None:
        if self._preferences is None:
            return None
        return await self._preferences.get_preferences(user_id)

    async def _load_history(self, request: TurnRequest) -> list[ConversationTurn]:
        if request.history is not None:
            return request.history
        if self._history is None:
            return []
        return await self._history.get_history(request.session_id, request.user_id)

    async def _guard(
        self,
        name: str,
        coro: Awaitable[T],
        default: T,
        timeout: float | None = None,
    ) -> T:
        timeout = timeout or self._config.assembly.fetch_timeout_seconds
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Turn step '{name}' timed out after {timeout}s, using default")
            return default
        except Exception as e:
            logger.warning(f"Turn step '{name}' failed, using default: {e}")
            return default
