"""
Domain layer for media conversion.
Provides the data model, gateways (converter provisioning and subprocess
execution), artifact delivery and a service that orchestrates one conversion
per request, so front-ends (HTTP or others) can use the same core logic.
"""

from .adapters import HttpExecutableProvisioner, SubprocessRunner
from .delivery import Delivery
from .errors import ConversionError
from .interfaces import (
    CancelToken,
    DeliveryMode,
    ExecutableProvisioner,
    ExecutionResult,
    JobSpec,
    KindProfile,
    ProcessRunner,
    ProvisionedExecutable,
)
from .kinds import KINDS, resolve_profile, validate
from .service import ConversionService
