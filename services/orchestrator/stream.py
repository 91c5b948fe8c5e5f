"""Per-request streaming pipeline: model tokens in, SSE messages out.

One ``StreamOrchestrator`` is built per process with its collaborators
injected; every request gets a fresh ``TurnSession`` that walks through

    idle -> connected -> streaming -> finalizing -> done
                                  \\-> failed

Tokens are forwarded the moment they arrive.  After each token the detector
cascade runs inline on the detection buffer and any recovered scene is sent
as a full snapshot.  A stream that never produced a scene gets one at the end
from the transcript sweep or the keyword generator.  Persistence is
best-effort and never turns into a stream error.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from time import perf_counter
from typing import Any, AsyncIterator

from prometheus_client import Counter, Histogram

from services.agents.text.adapters import ChatModelClient, extract_chunk_text
from services.agents.text.worker import build_prompt_messages
from services.protocol.sse import SSEEncoder, StreamMessage
from services.scene.detector import SceneJsonDetector
from services.scene.fallback import generate_default_scene
from services.scene.normalizer import normalize_many
from services.scene.objects import SceneObject
from services.store.conversations import ConversationStore

logger = logging.getLogger("scenechat.orchestrator")

STREAM_MESSAGES = Counter(
    "scenechat_stream_messages_total",
    "Stream messages sent to clients",
    ["type"],
)
SCENE_EXTRACTIONS = Counter(
    "scenechat_scene_extractions_total",
    "Scene snapshots produced, by detector tier or fallback",
    ["tier"],
)
STREAM_OUTCOMES = Counter(
    "scenechat_stream_outcomes_total",
    "Finished chat streams by outcome",
    ["outcome"],
)
TURN_LATENCY = Histogram(
    "scenechat_turn_latency_seconds",
    "Wall time of one chat stream",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 40.0, 80.0, 160.0),
)

TITLE_MAX_CHARS = 40


class StreamPhase(str, Enum):
    IDLE = "idle"
    CONNECTED = "connected"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ChatTurn:
    new_message: str
    history: list[dict[str, str]] = field(default_factory=list)
    conversation_id: str | None = None


@dataclass
class TurnSession:
    phase: StreamPhase = StreamPhase.IDLE
    transcript: str = ""
    buffer: str = ""
    snapshot: tuple[SceneObject, ...] = ()
    scene_emitted: bool = False
    conversation_id: str | None = None
    message_id: str | None = None
    error: str = ""

    def advance(self, phase: StreamPhase) -> None:
        logger.debug("Turn phase %s -> %s", self.phase.value, phase.value)
        self.phase = phase

    def fail(self, reason: str) -> None:
        self.error = reason
        self.advance(StreamPhase.FAILED)

    @property
    def finished(self) -> bool:
        return self.phase in {StreamPhase.DONE, StreamPhase.FAILED}


async def _next_chunk(iterator: AsyncIterator[Any]) -> Any:
    return await iterator.__anext__()


async def _close_upstream(iterator: AsyncIterator[Any] | None) -> None:
    closer = getattr(iterator, "aclose", None)
    if closer is None:
        return
    try:
        await closer()
    except Exception:  # noqa: BLE001
        logger.warning("Closing the upstream model stream failed", exc_info=True)


class StreamOrchestrator:
    def __init__(
        self,
        model: ChatModelClient,
        store: ConversationStore | None = None,
        detector: SceneJsonDetector | None = None,
        *,
        chunk_timeout_s: float = 60.0,
        options: dict[str, Any] | None = None,
    ) -> None:
        self.model = model
        self.store = store
        self.detector = detector or SceneJsonDetector()
        self.chunk_timeout_s = chunk_timeout_s
        self.options = options or {}

    async def stream(
        self,
        turn: ChatTurn,
        encoder: SSEEncoder,
        session: TurnSession | None = None,
    ) -> AsyncIterator[bytes]:
        """Encoded form of ``run``; this is what the HTTP response iterates."""
        session = session or TurnSession()
        started = perf_counter()
        messages = self.run(turn, session)
        try:
            async for message in messages:
                try:
                    frame = encoder.encode(message)
                except Exception as exc:  # noqa: BLE001
                    logger.error("Encoding a %s message failed: %s", message.type, exc)
                    session.fail(f"Failed to encode the {message.type} message")
                    STREAM_MESSAGES.labels(type="error").inc()
                    yield encoder.encode(StreamMessage.error(session.error))
                    return
                STREAM_MESSAGES.labels(type=message.type).inc()
                yield frame
        finally:
            await messages.aclose()
            if not session.finished:
                logger.info("Client went away during the %s phase, stream abandoned", session.phase.value)
                STREAM_OUTCOMES.labels(outcome="cancelled").inc()
            else:
                STREAM_OUTCOMES.labels(outcome=session.phase.value).inc()
            TURN_LATENCY.observe(perf_counter() - started)

    async def run(self, turn: ChatTurn, session: TurnSession | None = None) -> AsyncIterator[StreamMessage]:
        session = session or TurnSession()
        session.advance(StreamPhase.CONNECTED)
        yield StreamMessage.connected()

        session.conversation_id = await self._persist_user_message(turn)
        prompt = build_prompt_messages(turn.history, turn.new_message)

        iterator: AsyncIterator[Any] | None = None
        failure = ""
        try:
            iterator = self.model.stream_completion(prompt, self.options).__aiter__()
            session.advance(StreamPhase.STREAMING)
            while True:
                try:
                    chunk = await asyncio.wait_for(_next_chunk(iterator), timeout=self.chunk_timeout_s)
                except StopAsyncIteration:
                    break
                text = extract_chunk_text(chunk)
                if not text:
                    continue
                session.transcript += text
                session.buffer = self.detector.bound(session.buffer + text)
                yield StreamMessage.token(text)

                snapshot = self._detect(session)
                if snapshot:
                    yield StreamMessage.scene(snapshot)
        except asyncio.TimeoutError:
            logger.warning("Model stream stalled for more than %.1fs", self.chunk_timeout_s)
            failure = f"The model did not respond within {self.chunk_timeout_s:g}s"
        except Exception as exc:  # noqa: BLE001
            logger.warning("Model stream failed: %s", exc, exc_info=True)
            failure = f"The model stream failed: {exc}" if str(exc) else "The model stream failed"
        finally:
            await _close_upstream(iterator)

        if failure:
            session.fail(failure)
            yield StreamMessage.error(failure)
            return

        session.advance(StreamPhase.FINALIZING)
        if not session.scene_emitted:
            yield StreamMessage.scene(self._fallback_snapshot(session))

        session.message_id = await self._persist_reply(session)
        session.advance(StreamPhase.DONE)
        yield StreamMessage.done(session.conversation_id, session.message_id)

    def _detect(self, session: TurnSession) -> tuple[SceneObject, ...]:
        extraction = self.detector.try_extract(
            session.buffer,
            session.transcript,
            marker_only=session.scene_emitted,
        )
        if extraction is None:
            return ()
        session.buffer = session.buffer[extraction.consumed_up_to :]
        snapshot = normalize_many(extraction.payload)
        if not snapshot:
            return ()
        SCENE_EXTRACTIONS.labels(tier=extraction.tier).inc()
        session.snapshot = snapshot
        session.scene_emitted = True
        return snapshot

    def _fallback_snapshot(self, session: TurnSession) -> tuple[SceneObject, ...]:
        extraction = self.detector.final_sweep(session.transcript)
        snapshot = normalize_many(extraction.payload) if extraction is not None else ()
        tier = "final"
        if not snapshot:
            logger.info("No scene JSON in the reply, generating a scene from keywords")
            snapshot = generate_default_scene(session.transcript)
            tier = "default"
        SCENE_EXTRACTIONS.labels(tier=tier).inc()
        session.snapshot = snapshot
        session.scene_emitted = True
        return snapshot

    async def _persist_user_message(self, turn: ChatTurn) -> str | None:
        if self.store is None:
            return turn.conversation_id
        conversation_id = turn.conversation_id
        try:
            if not conversation_id:
                title = turn.new_message.strip()[:TITLE_MAX_CHARS] or "New conversation"
                conversation_id = await asyncio.to_thread(self.store.create_conversation, title)
            await asyncio.to_thread(self.store.append_message, conversation_id, "user", turn.new_message)
        except Exception:  # noqa: BLE001
            logger.warning("Storing the user message failed", exc_info=True)
        return conversation_id

    async def _persist_reply(self, session: TurnSession) -> str | None:
        if self.store is None or not session.conversation_id:
            return None
        try:
            return await asyncio.to_thread(
                self.store.append_message,
                session.conversation_id,
                "assistant",
                session.transcript,
                session.snapshot,
            )
        except Exception:  # noqa: BLE001
            logger.warning("Storing the assistant message failed", exc_info=True)
            return None


__all__ = ["ChatTurn", "StreamOrchestrator", "StreamPhase", "TurnSession"]
