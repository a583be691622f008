"""
Voice streaming pipeline.

Turns a stream of LLM text deltas into an ordered event stream:

    token   every delta, echoed as it arrives
    text    a finished sentence and its index (0, 1, ...)
    audio   base64 speech for a sentence, in index order
    action  one per action marker in the full reply
    done    final text, actions and credit totals
    error   terminal failure

Sentences are cut from a growing buffer as soon as they are speakable, and
synthesized in the background by a worker that fans out in small batches but
emits in queue order, so audio order always follows sentence order even when
individual synthesis calls finish out of order.
"""

import asyncio
import re
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from .actions import mask_actions, open_marker_at, parse_actions, strip_actions
from .errors import SynthesisFailure
from .metrics import synthesis_jobs_total, voice_streams_total
from .speech import MIN_SENTENCE_CHARS, SpeechSynthesizer, split_into_sentences
from .stores import CreditStore

logger = structlog.get_logger(__name__)

Event = dict[str, Any]

FIRST_FLUSH_CHARS = 25
SOFT_FLUSH_CHARS = 30
DEFAULT_BATCH_SIZE = 3

_SENTENCE_BOUNDARY = re.compile(r"[.!?]\s+")
_CLAUSE_BOUNDARY = re.compile(r"[,;:]\s+")

_END = object()


def _last_boundary(pattern: re.Pattern, text: str) -> int:
    end = 0
    for match in pattern.finditer(text):
        end = match.end()
    return end


class SentenceSegmenter:
    """
    Cut speakable sentences from a growing text buffer.

    Rules, checked after every delta:

    - before the first sentence, flush everything once the buffer is longer
      than FIRST_FLUSH_CHARS, punctuation or not;
    - cut at the last terminal punctuation followed by whitespace, unless
      the only candidate is still shorter than MIN_SENTENCE_CHARS;
    - after the first sentence, a buffer longer than SOFT_FLUSH_CHARS may also
      be cut at the last comma, semicolon or colon;
    - ``finish`` flushes whatever remains.

    Action markers are removed from what is returned. Text inside an
    unterminated marker is never cut, punctuation inside a complete marker is
    never a boundary, and a marker still open at ``finish`` is dropped.
    """

    def __init__(self):
        self.buffer = ""
        self.emitted = 0

    def feed(self, delta: str) -> list[str]:
        self.buffer += delta
        if (
            self.emitted == 0
            and len(self.buffer) > FIRST_FLUSH_CHARS
            and open_marker_at(self.buffer) == -1
        ):
            return self._take_all()
        return self._take_ready()

    def finish(self) -> list[str]:
        marker = open_marker_at(self.buffer)
        if marker != -1:
            self.buffer = self.buffer[:marker]
        return self._take_all()

    def _take_all(self) -> list[str]:
        text, self.buffer = strip_actions(self.buffer), ""
        if not text:
            return []
        self.emitted += 1
        return [text]

    def _take_ready(self) -> list[str]:
        searchable = self.buffer
        marker = open_marker_at(searchable)
        if marker != -1:
            searchable = searchable[:marker]
        masked = mask_actions(searchable)

        cut = _last_boundary(_SENTENCE_BOUNDARY, masked)
        if cut:
            sentences = split_into_sentences(strip_actions(searchable[:cut]))
            if len(sentences) > 1 or (
                sentences and len(sentences[0]) >= MIN_SENTENCE_CHARS
            ):
                self.buffer = self.buffer[cut:]
                self.emitted += len(sentences)
                return sentences

        if self.emitted and len(self.buffer) > SOFT_FLUSH_CHARS:
            cut = _last_boundary(_CLAUSE_BOUNDARY, masked)
            if cut:
                clause = strip_actions(searchable[:cut])
                if len(clause) >= MIN_SENTENCE_CHARS:
                    self.buffer = self.buffer[cut:]
                    self.emitted += 1
                    return [clause]
        return []


@dataclass
class SynthesisJob:
    sentence: str
    index: int


class SynthesisQueue:
    """
    Background synthesis worker.

    Jobs are drained in batches of up to ``batch_size`` run concurrently; a
    batch's results are emitted in queue order only after the whole batch
    has finished. The worker starts on the first enqueue, exits when the
    queue is empty and is restarted by the next enqueue.
    """

    def __init__(
        self,
        synthesize: Callable[[str, int], Awaitable[str]],
        emit: Callable[[Event], None],
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self._synthesize = synthesize
        self._emit = emit
        self.batch_size = batch_size
        self._jobs: deque[SynthesisJob] = deque()
        self._draining = False
        self._idle = asyncio.Event()
        self._idle.set()
        self._task: asyncio.Task | None = None
        self._cancelled = False

    @property
    def draining(self) -> bool:
        return self._draining

    def __len__(self) -> int:
        return len(self._jobs)

    def enqueue(self, sentence: str, index: int) -> None:
        if self._cancelled:
            return
        self._jobs.append(SynthesisJob(sentence, index))
        self._idle.clear()
        if not self._draining:
            self._draining = True
            self._task = asyncio.create_task(self._drain())

    async def wait_idle(self) -> None:
        await self._idle.wait()

    def cancel(self) -> None:
        self._cancelled = True
        self._jobs.clear()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._idle.set()

    async def _drain(self) -> None:
        try:
            while self._jobs and not self._cancelled:
                size = min(self.batch_size, len(self._jobs))
                batch = [self._jobs.popleft() for _ in range(size)]
                results = await asyncio.gather(
                    *(self._run_job(job) for job in batch), return_exceptions=True
                )
                for job, result in zip(batch, results):
                    if isinstance(result, BaseException):
                        synthesis_jobs_total.labels(status="failed").inc()
                        logger.warning(
                            "synthesis_job_failed", index=job.index, error=str(result)
                        )
                        continue
                    synthesis_jobs_total.labels(status="ok").inc()
                    self._emit({"type": "audio", "data": result, "index": job.index})
        finally:
            self._draining = False
            self._idle.set()

    async def _run_job(self, job: SynthesisJob) -> str:
        try:
            return await self._synthesize(job.sentence, job.index)
        except SynthesisFailure:
            raise
        except Exception as e:
            raise SynthesisFailure(job.index, str(e), e) from e


class VoicePipeline:
    """One streaming voice request: consume deltas, produce events."""

    def __init__(
        self,
        source: AsyncIterator[str],
        *,
        user_id: str,
        credits: CreditStore,
        cost: int,
        synthesizer: SpeechSynthesizer | None = None,
        voice: str = "alloy",
        native_tts: bool = False,
        batch_size: int = DEFAULT_BATCH_SIZE,
        on_complete: Callable[[str], Awaitable[None]] | None = None,
    ):
        if synthesizer is None and not native_tts:
            raise ValueError("synthesizer is required unless native_tts is set")
        self._source = source
        self.user_id = user_id
        self._credits = credits
        self.cost = cost
        self._synthesizer = synthesizer
        self.voice = voice
        self.native_tts = native_tts
        self._on_complete = on_complete

        self._segmenter = SentenceSegmenter()
        self._synthesis = SynthesisQueue(self._synthesize, self._emit, batch_size)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._full_text: list[str] = []
        self._sentence_index = 0
        self._task: asyncio.Task | None = None
        self._closer: asyncio.Task | None = None
        self._cancelled = False
        self._completing = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def start(self) -> None:
        if self._task is None and not self._cancelled:
            self._task = asyncio.create_task(self._run())

    async def events(self) -> AsyncIterator[Event]:
        """Yield events until the pipeline finishes, fails or is cancelled."""
        self.start()
        while True:
            event = await self._queue.get()
            if event is _END:
                return
            yield event

    def cancel(self) -> None:
        """
        Abort the request. Safe to call more than once.

        Once the request has started completing (debit and usage record), the
        run is left to finish and only further events are suppressed.
        """
        if self._cancelled or (self._task is not None and self._task.done()):
            return
        self._cancelled = True
        self._synthesis.cancel()
        if self._task is None:
            self._closer = asyncio.create_task(self._close_source())
            voice_streams_total.labels(state="cancelled").inc()
        elif not self._completing:
            self._task.cancel()
        self._queue.put_nowait(_END)
        logger.info("voice_stream_cancelled", user_id=self.user_id)

    async def wait_closed(self) -> None:
        pending = [t for t in (self._task, self._closer) if t is not None]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _emit(self, event: Event) -> None:
        if not self._cancelled:
            self._queue.put_nowait(event)

    async def _synthesize(self, sentence: str, index: int) -> str:
        return await self._synthesizer.synthesize(sentence, self.voice, index=index)

    def _emit_sentences(self, sentences: list[str]) -> None:
        for sentence in sentences:
            spoken = strip_actions(sentence)
            if not spoken:
                continue
            index = self._sentence_index
            self._sentence_index += 1
            self._emit({"type": "text", "data": spoken, "index": index})
            if not self.native_tts:
                self._synthesis.enqueue(spoken, index)

    async def _run(self) -> None:
        state = "done"
        try:
            async for delta in self._source:
                self._emit({"type": "token", "data": delta})
                self._full_text.append(delta)
                self._emit_sentences(self._segmenter.feed(delta))

            self._emit_sentences(self._segmenter.finish())
            await self._synthesis.wait_idle()
            await self._complete()
        except asyncio.CancelledError:
            state = "cancelled"
        except Exception as e:
            state = "error"
            logger.error(
                "voice_stream_failed", user_id=self.user_id, error=str(e), exc_info=True
            )
            self._emit({"type": "error", "message": str(e)})
        finally:
            if state != "done":
                self._synthesis.cancel()
            await self._close_source()
            voice_streams_total.labels(state=state).inc()
            self._queue.put_nowait(_END)

    async def _complete(self) -> None:
        self._completing = True
        clean_text, actions = parse_actions("".join(self._full_text))
        for action in actions:
            self._emit(
                {"type": "action", "action": action["type"], "params": action["params"]}
            )

        remaining = await self._credits.debit_credits(self.user_id, self.cost)
        await self._credits.record_usage(self.user_id, "voice_message", self.cost)
        if self._on_complete is not None:
            await self._on_complete(clean_text)

        self._emit(
            {
                "type": "done",
                "fullText": clean_text,
                "actions": actions,
                "credits": {"used": self.cost, "remaining": remaining},
            }
        )
        logger.info(
            "voice_stream_completed",
            user_id=self.user_id,
            sentences=self._sentence_index,
            actions=len(actions),
        )

    async def _close_source(self) -> None:
        aclose = getattr(self._source, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.debug("voice_source_close_failed", error=str(e))
