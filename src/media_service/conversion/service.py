import asyncio
import logging
from collections.abc import Mapping
from pathlib import Path

from .delivery import DEFAULT_CHUNK_SIZE, Delivery
from .errors import ProvisioningError
from .interfaces import (
    CancelToken,
    DeliveryMode,
    ExecutableProvisioner,
    JobSpec,
    ProcessRunner,
    ProvisionedExecutable,
)
from .kinds import validate

logger = logging.getLogger(__name__)


class ConversionService:
    """Core domain service running one conversion per request.

    This service is framework-agnostic. Each call to ``convert`` validates
    the request, makes sure the converter executable is on disk, runs it and
    hands back a ``Delivery`` that streams the artifact and owns its cleanup.
    No state is kept between requests apart from the provisioned executable.
    """

    def __init__(
        self,
        provisioner: ExecutableProvisioner,
        runner: ProcessRunner,
        *,
        delivery_mode: DeliveryMode = DeliveryMode.BUFFERED,
        work_dir: str | Path = ".",
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self._provisioner = provisioner
        self._runner = runner
        self._delivery_mode = DeliveryMode(delivery_mode)
        self._work_dir = Path(work_dir)
        self._chunk_size = chunk_size

    @property
    def delivery_mode(self) -> DeliveryMode:
        return self._delivery_mode

    def validate(self, raw: Mapping[str, object]) -> JobSpec:
        return validate(raw, delivery_mode=self._delivery_mode, work_dir=self._work_dir)

    def executable_state(self) -> ProvisionedExecutable | None:
        return self._provisioner.current()

    async def prepare(self) -> ProvisionedExecutable:
        try:
            return await asyncio.to_thread(self._provisioner.ensure)
        except OSError as e:
            raise ProvisioningError(f"could not install converter: {e}") from e

    async def convert(self, raw: Mapping[str, object], cancel: CancelToken | None = None) -> Delivery:
        job = self.validate(raw)
        executable = await self.prepare()
        logger.info("Converting %s as %s (%s)", job.source_reference, job.output_kind, job.delivery_mode.value)
        result = await self._runner.run(executable, job, cancel)
        delivery = Delivery(job, result, self._runner, chunk_size=self._chunk_size)
        await delivery.prime(cancel)
        return delivery
