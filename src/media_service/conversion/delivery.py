"""Streaming of converted artifacts to the caller.

A ``Delivery`` owns the job's temporary resources from the moment execution
finishes. Its cleanup runs exactly once, whether the body was streamed to
the end, failed midway, was abandoned by the client or was never started.
"""

import asyncio
import logging
from collections.abc import AsyncIterator

import anyio

from .adapters import discard_artifacts
from .errors import ArtifactMissing, ConversionFailed, JobCancelled
from .interfaces import CancelToken, DeliveryMode, ExecutionResult, JobSpec, ProcessRunner

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 256 * 1024


def response_headers(job: JobSpec, size_bytes: int | None = None) -> dict[str, str]:
    headers = {
        "Content-Type": job.profile.mime_type,
        "Content-Disposition": f'attachment; filename="{job.profile.filename}"',
    }
    if size_bytes is not None:
        headers["Content-Length"] = str(size_bytes)
    return headers


class Delivery:
    def __init__(
        self,
        job: JobSpec,
        result: ExecutionResult,
        runner: ProcessRunner,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.job = job
        self.result = result
        self._runner = runner
        self._chunk_size = chunk_size
        self._closed = False
        self._completed = False
        self._pending = b""

        size = None
        if job.delivery_mode is DeliveryMode.BUFFERED and result.output_path is not None:
            size = result.output_path.stat().st_size
        self.headers = response_headers(job, size)

    @property
    def media_type(self) -> str:
        return self.job.profile.mime_type

    @property
    def closed(self) -> bool:
        return self._closed

    def body(self) -> AsyncIterator[bytes]:
        if self.job.delivery_mode is DeliveryMode.DIRECT:
            return self._stream_process()
        return self._stream_file()

    async def _stream_file(self) -> AsyncIterator[bytes]:
        path = self.result.output_path
        assert path is not None
        try:
            f = await asyncio.to_thread(path.open, "rb")
            try:
                while True:
                    chunk = await asyncio.to_thread(f.read, self._chunk_size)
                    if not chunk:
                        break
                    yield chunk
            finally:
                f.close()
            self._completed = True
        finally:
            await self.aclose()

    async def prime(self, cancel: CancelToken | None = None) -> None:
        """Wait for the first bytes of a direct conversion.

        A converter that fails before producing any output is reported as a
        regular error, while a JSON error response is still possible.
        """
        if self.job.delivery_mode is not DeliveryMode.DIRECT:
            return
        process = self.result.process
        assert process is not None and process.stdout is not None
        try:
            read = asyncio.ensure_future(process.stdout.read(self._chunk_size))
            if cancel is not None:
                watcher = asyncio.ensure_future(cancel.wait())
                try:
                    await asyncio.wait({read, watcher}, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    watcher.cancel()
                if not read.done():
                    read.cancel()
                    raise JobCancelled()
            first = await read
            if not first:
                exit_code = await process.wait()
                await self._runner.terminate(process)
                if self.result.stderr_task is not None:
                    await self.result.stderr_task
                self.result.exit_code = exit_code
                if exit_code != 0:
                    raise ConversionFailed(exit_code, list(self.result.stderr_tail))
                raise ArtifactMissing("<stdout>")
        except BaseException:
            await self.aclose()
            raise
        self._pending = first

    async def _stream_process(self) -> AsyncIterator[bytes]:
        process = self.result.process
        assert process is not None and process.stdout is not None
        try:
            if self._pending:
                chunk, self._pending = self._pending, b""
                yield chunk
            while True:
                # Reads are driven by the consumer; the pipe applies backpressure
                chunk = await process.stdout.read(self._chunk_size)
                if not chunk:
                    break
                yield chunk
            exit_code = await process.wait()
            await self._runner.terminate(process)
            if self.result.stderr_task is not None:
                await self.result.stderr_task
            self.result.exit_code = exit_code
            if exit_code != 0:
                # Headers are already out; raising aborts the connection
                raise ConversionFailed(exit_code, list(self.result.stderr_tail))
            self._completed = True
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self._completed:
            logger.info("Delivery of %s ended before completion", self.job.profile.filename)
        with anyio.CancelScope(shield=True):
            process = self.result.process
            if process is not None:
                await self._runner.terminate(process)
            task = self.result.stderr_task
            if task is not None and not task.done():
                task.cancel()
            if self.result.output_path is not None:
                await asyncio.to_thread(discard_artifacts, self.result.output_path)
