import asyncio
import logging
import os
import signal
import threading
import uuid
from collections import deque
from pathlib import Path
from urllib.parse import urljoin

import requests

from .errors import (
    ArtifactMissing,
    ConversionFailed,
    DownloadFailed,
    InvalidArtifact,
    JobCancelled,
    SpawnFailed,
    TooManyRedirects,
)
from .interfaces import (
    CancelToken,
    DeliveryMode,
    ExecutableProvisioner,
    ExecutionResult,
    JobSpec,
    ProcessRunner,
    ProvisionedExecutable,
)

logger = logging.getLogger(__name__)

REDIRECT_STATUSES = {301, 302, 303, 307, 308}


def discard_artifacts(output_path: Path) -> None:
    """Remove a job's output file and any partial files the converter left next to it."""
    parent = output_path.parent
    if not parent.exists():
        return
    for p in parent.glob(f"{output_path.stem}*"):
        try:
            p.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove %s: %s", p, e)


class HttpExecutableProvisioner(ExecutableProvisioner):
    def __init__(
        self,
        path: str | Path,
        url: str,
        *,
        min_size_bytes: int = 100_000,
        max_redirects: int = 5,
        timeout: float = 60.0,
        chunk_size: int = 1024 * 1024,
        session: requests.Session | None = None,
    ) -> None:
        self._path = Path(path)
        self._url = url
        self._min_size = min_size_bytes
        self._max_redirects = max_redirects
        self._timeout = timeout
        self._chunk_size = chunk_size
        self._session = session or requests.Session()
        # Only held while the executable is missing
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def current(self) -> ProvisionedExecutable | None:
        try:
            st = self._path.stat()
        except FileNotFoundError:
            return None
        return ProvisionedExecutable(path=self._path, verified=True, size_bytes=st.st_size)

    def ensure(self) -> ProvisionedExecutable:
        existing = self.current()
        if existing is not None:
            return existing
        with self._lock:
            existing = self.current()
            if existing is not None:
                return existing
            return self._download()

    def _open(self) -> requests.Response:
        """GET the distribution URL, following redirects manually."""
        url = self._url
        redirects = 0
        while True:
            try:
                resp = self._session.get(url, stream=True, allow_redirects=False, timeout=self._timeout)
            except requests.RequestException as e:
                raise DownloadFailed(None, str(e)) from e
            location = resp.headers.get("Location")
            if resp.status_code in REDIRECT_STATUSES and location:
                resp.close()
                if redirects >= self._max_redirects:
                    raise TooManyRedirects(self._max_redirects)
                redirects += 1
                url = urljoin(url, location)
                logger.debug("Following redirect %d to %s", redirects, url)
                continue
            if not 200 <= resp.status_code < 300:
                resp.close()
                raise DownloadFailed(resp.status_code)
            return resp

    def _download(self) -> ProvisionedExecutable:
        logger.info("Downloading converter from %s", self._url)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        # Distinct name in the same directory so the final rename is atomic
        tmp_path = self._path.with_name(f".{self._path.name}.{uuid.uuid4().hex}.part")
        resp = self._open()
        installed = False
        try:
            size_bytes = 0
            with tmp_path.open("wb") as f_out:
                try:
                    for chunk in resp.iter_content(chunk_size=self._chunk_size):
                        if not chunk:
                            continue
                        size_bytes += len(chunk)
                        f_out.write(chunk)
                except requests.RequestException as e:
                    raise DownloadFailed(None, str(e)) from e
            if size_bytes < self._min_size:
                raise InvalidArtifact(size_bytes, self._min_size)
            os.chmod(tmp_path, 0o755)
            os.replace(tmp_path, self._path)
            installed = True
        finally:
            resp.close()
            if not installed:
                tmp_path.unlink(missing_ok=True)
        logger.info("Converter installed at %s (%d bytes)", self._path, size_bytes)
        return ProvisionedExecutable(path=self._path, verified=True, size_bytes=size_bytes)


class SubprocessRunner(ProcessRunner):
    def __init__(
        self,
        *,
        stderr_lines: int = 20,
        kill_timeout: float = 5.0,
        group_grace: float = 1.0,
        extra_args: tuple[str, ...] = ("--no-playlist", "--no-progress"),
    ) -> None:
        self._stderr_lines = stderr_lines
        self._kill_timeout = kill_timeout
        self._group_grace = group_grace
        self._extra_args = extra_args

    def build_argv(self, executable: Path, job: JobSpec) -> list[str]:
        if job.delivery_mode is DeliveryMode.DIRECT:
            dest = "-"
        else:
            assert job.output_path is not None
            dest = str(job.output_path)
        # "--" keeps the source reference from ever being parsed as an option
        return [
            str(executable),
            *job.profile.args,
            *self._extra_args,
            "-o",
            dest,
            "--",
            job.source_reference,
        ]

    async def _drain(self, reader: asyncio.StreamReader, tail: deque[str]) -> None:
        while True:
            line = await reader.readline()
            if not line:
                break
            text = line.decode("utf-8", "replace").rstrip()
            if text:
                tail.append(text)
                logger.debug("converter: %s", text)

    def _signal_group(self, process: asyncio.subprocess.Process, sig: int) -> bool:
        # The converter leads its own session, so its pid is also the group id
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            return False
        return True

    async def _wait_group_gone(self, pgid: int) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._group_grace
        while loop.time() < deadline:
            try:
                os.killpg(pgid, 0)
            except ProcessLookupError:
                return
            await asyncio.sleep(0.05)
        logger.warning("Process group %s still present after kill", pgid)

    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        """Stop the converter and every helper process it started."""
        if process.returncode is None:
            if self._signal_group(process, signal.SIGTERM):
                try:
                    await asyncio.wait_for(process.wait(), self._kill_timeout)
                except asyncio.TimeoutError:
                    logger.warning("Converter pid %s ignored SIGTERM; killing", process.pid)
        # Helpers such as ffmpeg may outlive the converter itself
        if self._signal_group(process, signal.SIGKILL):
            if process.returncode is None:
                await process.wait()
            await self._wait_group_gone(process.pid)
        elif process.returncode is None:
            await process.wait()

    async def _wait(self, process: asyncio.subprocess.Process, cancel: CancelToken | None) -> int:
        if cancel is None:
            return await process.wait()
        waiter = asyncio.ensure_future(process.wait())
        watcher = asyncio.ensure_future(cancel.wait())
        try:
            done, _ = await asyncio.wait({waiter, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in (waiter, watcher):
                if not t.done():
                    t.cancel()
        if waiter in done:
            return waiter.result()
        raise JobCancelled()

    async def run(
        self,
        executable: ProvisionedExecutable,
        job: JobSpec,
        cancel: CancelToken | None = None,
    ) -> ExecutionResult:
        argv = self.build_argv(executable.path, job)
        direct = job.delivery_mode is DeliveryMode.DIRECT
        logger.info("Running converter: %s", " ".join(argv))

        if not direct:
            assert job.output_path is not None
            job.output_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE if direct else asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnFailed(str(e)) from e

        tail: deque[str] = deque(maxlen=self._stderr_lines)
        assert process.stderr is not None
        stderr_task = asyncio.create_task(self._drain(process.stderr, tail))

        if direct:
            # Exit status is checked by the delivery stream once stdout is exhausted
            return ExecutionResult(
                exit_code=None,
                stderr_tail=tail,
                process=process,
                stderr_task=stderr_task,
            )

        output_path = job.output_path
        try:
            exit_code = await self._wait(process, cancel)
        except (JobCancelled, asyncio.CancelledError):
            logger.info("Conversion of %s cancelled; stopping converter", job.source_reference)
            await self.terminate(process)
            stderr_task.cancel()
            # Only once the whole group is gone can nothing rewrite the output
            discard_artifacts(output_path)
            raise
        # Leftover helpers would keep stderr open and could still write the output
        await self.terminate(process)
        await stderr_task

        logger.info("Converter exited with %s", exit_code)
        if exit_code != 0:
            discard_artifacts(output_path)
            raise ConversionFailed(exit_code, list(tail))
        if not output_path.exists():
            discard_artifacts(output_path)
            raise ArtifactMissing(str(output_path))

        return ExecutionResult(exit_code=exit_code, stderr_tail=tail, output_path=output_path)
