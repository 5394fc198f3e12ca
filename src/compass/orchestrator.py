import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import replace

from anthropic import AsyncAnthropic
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt

from . import config
from .analysis import ANALYSIS_SCHEMA_VERSION, NEUTRAL_ANALYSIS, UnifiedAnalysis, parse_analysis
from .components import ComponentContext, ComponentEngine, default_registry, select_trigger_point
from .decision_engine import Decision, apply_decision, decide
from .logging_config import setup_logging
from .persistence import PersistenceConflict, PersistenceError, SessionRecord, SessionStore
from .prompts import ANALYSIS_PROMPT, OPENING_MESSAGE, compose_system_prompt
from .state import InvalidStateError, init_conversation_state

setup_logging()
logger = logging.getLogger("compass.orchestrator")

RETRY_MESSAGE = "Something went wrong saving our conversation. Please send your last message again."
GENERATION_FALLBACK = (
    "I hit a temporary issue putting my reply together. "
    "Your conversation is preserved, so please go on where you left off."
)


class TurnCoordinator:
    """Runs one user turn end to end.

    The decision and component engines are plain synchronous functions;
    every await (model calls, file I/O) happens here. Turns for the same
    session are serialized by a per-session lock held in this process, and
    the commit is version-checked: a stale write raises PersistenceConflict
    and the turn is re-run against the latest record.
    """

    def __init__(self, client, store: SessionStore, component_engine: ComponentEngine):
        self.client = client
        self.store = store
        self.component_engine = component_engine
        self._locks = {}
        self._lock_users = {}

    @asynccontextmanager
    async def _session_lock(self, session_id: str):
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # Drop the lock once no turn for this session holds or waits on it
            self._lock_users[session_id] -= 1
            if not self._lock_users[session_id]:
                del self._lock_users[session_id]
                del self._locks[session_id]

    async def start_session(self, module0_context: dict | None = None) -> str:
        """Create a session from intake answers and return its id."""
        state = init_conversation_state(module0_context)
        record = await asyncio.to_thread(
            self.store.create, state, [{"role": "assistant", "content": OPENING_MESSAGE}]
        )
        return record.session_id

    async def get_session(self, session_id: str) -> SessionRecord:
        return await asyncio.to_thread(self.store.load, session_id)

    async def process_turn(self, session_id: str, user_message: str) -> dict:
        """Process one user message and return the response payload."""
        async with self._session_lock(session_id):
            record = await self._load(session_id)
            if record is None:
                return self._retry_payload(session_id)

            logger.info("=== Session %s turn %d start ===", session_id, record.state.turns_total + 1)

            # --- Analysis (collaborator) ---
            analysis = await self._run_analysis(record, user_message)

            retrying = AsyncRetrying(
                retry=retry_if_exception_type(PersistenceConflict),
                stop=stop_after_attempt(config.MAX_COMMIT_ATTEMPTS),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            )
            try:
                return await retrying(self._attempt_turn, session_id, user_message, analysis)
            except PersistenceConflict:
                logger.error(
                    "Giving up on session %s after %d conflicting commits", session_id, config.MAX_COMMIT_ATTEMPTS
                )
            except PersistenceError:
                logger.exception("Failed to commit session %s", session_id)
            return self._retry_payload(session_id)

    async def _attempt_turn(self, session_id: str, user_message: str, analysis: UnifiedAnalysis) -> dict:
        """Decide, generate and commit against the latest record. Raises PersistenceConflict on a stale write."""
        record = await self._load(session_id)
        if record is None:
            return self._retry_payload(session_id)

        # --- Decision + components (pure) ---
        decision = decide(record.state, analysis)
        new_state = apply_decision(record.state, decision)
        context = ComponentContext.for_turn(new_state, decision)
        components = self.component_engine.evaluate(select_trigger_point(decision), context)
        new_state = replace(new_state, component_flags=context.component_flags)

        # --- Generation (collaborator) ---
        reply = await self._generate_reply(decision, record.messages, user_message)

        messages = record.messages + [
            {"role": "user", "content": user_message},
            {"role": "assistant", "content": reply},
        ]
        await asyncio.to_thread(
            self.store.commit,
            SessionRecord(session_id, new_state, messages, record.version),
            record.version,
        )
        return {
            "ok": True,
            "session_id": session_id,
            "message": reply,
            "components": [c.to_dict() for c in components],
            "phase": new_state.phase.value,
            "action": decision.action.value,
            "turn": new_state.turns_total,
        }

    async def _load(self, session_id: str) -> SessionRecord | None:
        try:
            return await asyncio.to_thread(self.store.load, session_id)
        except InvalidStateError:
            logger.exception("Session %s has an invalid state record", session_id)
            raise
        except PersistenceError:
            logger.exception("Failed to load session %s", session_id)
            return None

    async def _run_analysis(self, record: SessionRecord, user_message: str) -> UnifiedAnalysis:
        """Structured signals for the latest message. Falls back to neutral on any failure."""
        state = record.state
        recent = (record.messages + [{"role": "user", "content": user_message}])[-config.RECENT_MESSAGE_WINDOW:]
        prompt = ANALYSIS_PROMPT.format(
            phase=state.phase.value,
            turn=state.turns_total + 1,
            hypothesis=state.hypothesis.value if state.hypothesis else "none",
            hypothesis_confidence=f"{state.hypothesis_confidence:.2f}",
            constraint_category=state.constraint_category.value if state.constraint_category else "none",
            module0_context=json.dumps(dict(state.module0_context)),
            recent_messages=_format_messages(recent),
            user_message=user_message,
            schema_version=ANALYSIS_SCHEMA_VERSION,
        )

        try:
            response = await self.client.messages.create(
                model=config.ANALYSIS_MODEL,
                max_tokens=800,
                system="You are a signal extractor. Respond ONLY with valid JSON. No markdown, no explanation.",
                messages=[{"role": "user", "content": prompt}],
            )
            logger.debug(
                "API usage - input_tokens: %d, output_tokens: %d, stop_reason: %s",
                response.usage.input_tokens, response.usage.output_tokens, response.stop_reason,
            )

            raw = response.content[0].text.strip()
            # Handle potential markdown code fence
            if raw.startswith("```"):
                raw = raw.split("\n", 1)[1].rsplit("```", 1)[0].strip()
            analysis = parse_analysis(json.loads(raw))
            logger.info("Analysis: %s", raw)
        except Exception:
            logger.warning("Analysis failed, continuing with neutral signals", exc_info=True)
            analysis = NEUTRAL_ANALYSIS
        return analysis

    async def _generate_reply(self, decision: Decision, history: list, user_message: str) -> str:
        system = compose_system_prompt(
            decision.phase.value,
            decision.overlay_id,
            redirect_to=decision.redirect_to.value if decision.redirect_to else None,
        )
        api_messages = [
            {"role": m["role"], "content": m["content"]}
            for m in history
            if m.get("role") in ("user", "assistant")
        ]
        api_messages.append({"role": "user", "content": user_message})
        # The API wants the conversation to open with a user turn
        while api_messages and api_messages[0]["role"] == "assistant":
            api_messages.pop(0)

        try:
            response = await self.client.messages.create(
                model=config.MODEL_NAME,
                max_tokens=1024,
                system=system,
                messages=api_messages,
            )
            logger.debug(
                "API usage - input_tokens: %d, output_tokens: %d, stop_reason: %s",
                response.usage.input_tokens, response.usage.output_tokens, response.stop_reason,
            )
            text = "".join(block.text for block in response.content if block.type == "text").strip()
        except Exception:
            logger.exception("Generation failed for action %s", decision.action.value)
            return GENERATION_FALLBACK

        if not text:
            logger.warning("Generation returned empty text for action %s", decision.action.value)
            return GENERATION_FALLBACK
        return text

    def _retry_payload(self, session_id: str) -> dict:
        return {
            "ok": False,
            "session_id": session_id,
            "message": RETRY_MESSAGE,
            "components": [],
            "phase": None,
            "action": None,
            "turn": None,
        }


def _format_messages(messages: list) -> str:
    return "\n".join(f"{m['role'].upper()}: {m['content']}" for m in messages)


def build_coordinator(client=None, store: SessionStore | None = None, registry=None) -> TurnCoordinator:
    """Wire the default collaborators. Everything is passed in explicitly."""
    return TurnCoordinator(
        client=client or AsyncAnthropic(),
        store=store or SessionStore(),
        component_engine=ComponentEngine(registry or default_registry()),
    )
