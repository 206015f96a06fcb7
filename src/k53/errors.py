"""Exception types raised by the reconciler and its adapters."""

from __future__ import annotations

from typing import Optional, Union


class K53Error(Exception):
    """Base class for all k53 errors."""


class ProviderError(K53Error):
    """A call to an external collaborator (DNS authority, cluster API) failed."""


class MetadataError(ProviderError):
    """The network scope (VPC) of the running process could not be resolved."""


class CycleError(K53Error):
    """A reconciliation cycle was aborted.

    Carries the stage that failed, the zone being reconciled and the wrapped
    cause. ``retry_after`` is filled in by the reconciler with the backoff
    interval the caller should wait before the next attempt.

    ``applied`` counts the changes already committed to the zone when the
    cycle stopped, out of ``total``; ``partial`` is True when some of the
    change list reached the zone.
    """

    stage = "cycle"

    def __init__(
        self,
        stage: Optional[str] = None,
        zone_name: str = "",
        cause: Union[BaseException, str, None] = None,
        *,
        applied: int = 0,
        total: int = 0,
    ):
        self.stage = stage or self.stage
        self.zone_name = zone_name
        self.cause = cause
        self.applied = applied
        self.total = total
        self.retry_after: Optional[float] = None
        super().__init__(self._format())

    @property
    def partial(self) -> bool:
        return self.applied > 0

    def _format(self) -> str:
        where = f" for zone {self.zone_name}" if self.zone_name else ""
        reason = f": {self.cause}" if self.cause else ""
        message = f"{self.stage} stage failed{where}{reason}"
        if self.partial:
            message += f" (partially applied: {self.applied}/{self.total} changes committed)"
        return message


class ProvisioningError(CycleError):
    """Zone lookup or creation failed."""

    stage = "bootstrap"


class ReadError(CycleError):
    """Listing cluster membership or zone records failed."""

    stage = "read"


class DiffError(CycleError):
    """Desired or observed state violated an invariant the diff relies on."""

    stage = "diff"


class ApplyError(CycleError):
    """Submitting a change batch failed."""

    stage = "apply"


class CycleCancelled(CycleError):
    """The cycle was cancelled or exceeded its deadline."""

    stage = "cancelled"
