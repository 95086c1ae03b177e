"""Error taxonomy shared by every fleetctl module."""

from __future__ import annotations

from typing import Iterable, List, Optional


class FleetError(RuntimeError):
    """Base error for fleetctl."""


class FleetClientError(FleetError):
    """An HTTP call against the Appliance Control API failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ConflictError(FleetClientError):
    """The remote side refused the request because of a conflicting operation."""


class ValidationError(FleetError):
    """A filter value could not be parsed."""


class TopologyError(FleetError):
    """The fleet topology does not allow the requested operation."""


class PermanentError(FleetError):
    """Indicates the operation should not be retried."""


class WaitTimeoutError(FleetError, TimeoutError):
    """A polling loop ran out of its time budget."""


class PreconditionError(FleetError):
    """A fleet-level precondition failed before any per-appliance work."""


class AggregateError(FleetError):
    """Collection of per-appliance errors from a batch operation.

    ``errors`` keeps every constituent error in the order it was reported so
    callers can inspect or retry the failed subset.
    """

    def __init__(self, errors: Iterable[BaseException]):
        self.errors: List[BaseException] = list(errors)
        super().__init__(self._render())

    def _render(self) -> str:
        if len(self.errors) == 1:
            return f"1 error occurred:\n\t* {self.errors[0]}"
        lines = "\n".join(f"\t* {err}" for err in self.errors)
        return f"{len(self.errors)} errors occurred:\n{lines}"

    def __len__(self) -> int:
        return len(self.errors)

    def __iter__(self):
        return iter(self.errors)

    @classmethod
    def from_errors(cls, errors: Iterable[Optional[BaseException]]) -> Optional["AggregateError"]:
        """Return an aggregate of the non-``None`` errors, or ``None`` if there are none.

        Nested aggregates are flattened.
        """
        flat: List[BaseException] = []
        for err in errors:
            if err is None:
                continue
            if isinstance(err, AggregateError):
                flat.extend(err.errors)
            else:
                flat.append(err)
        if not flat:
            return None
        return cls(flat)
