import asyncio
import enum
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


class DeliveryMode(str, enum.Enum):
    BUFFERED = "buffered"
    DIRECT = "direct"


@dataclass(frozen=True)
class KindProfile:
    name: str
    args: tuple[str, ...]
    mime_type: str
    filename: str
    # False when the converter must post-process on disk (no stdout output)
    streamable: bool = True

    @property
    def suffix(self) -> str:
        return Path(self.filename).suffix


@dataclass(frozen=True)
class JobSpec:
    source_reference: str
    output_kind: str
    profile: KindProfile
    delivery_mode: DeliveryMode
    output_path: Path | None = None


@dataclass(frozen=True)
class ProvisionedExecutable:
    path: Path
    verified: bool
    size_bytes: int


@dataclass
class ExecutionResult:
    exit_code: int | None
    stderr_tail: deque[str] = field(default_factory=deque)
    output_path: Path | None = None
    # Direct mode only: live process whose stdout feeds the response
    process: asyncio.subprocess.Process | None = None
    stderr_task: asyncio.Task | None = None

    @property
    def stream(self) -> asyncio.StreamReader | None:
        return self.process.stdout if self.process is not None else None


class CancelToken:
    """Set by the caller to abort a running conversion."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class ExecutableProvisioner(Protocol):
    def ensure(self) -> ProvisionedExecutable:
        """Return a verified converter executable, downloading it on first use.
        This is a blocking call; callers should offload to threads if needed.
        """

    def current(self) -> ProvisionedExecutable | None:
        """Return the on-disk state without downloading anything."""


class ProcessRunner(Protocol):
    async def run(
        self,
        executable: ProvisionedExecutable,
        job: JobSpec,
        cancel: CancelToken | None = None,
    ) -> ExecutionResult:
        ...

    async def terminate(self, process: asyncio.subprocess.Process) -> None:
        """Stop the process and any children it spawned; safe to call after exit."""
