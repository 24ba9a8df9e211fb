"""Name-keyed table of sync functions the worker can run."""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

from fantasy_pipeline.services.credentials import Credential

if TYPE_CHECKING:
    from fantasy_pipeline.worker import WorkerContext


class UnknownJobError(LookupError):
    """No sync function is registered under the job's name."""

    def __init__(self, name: str):
        super().__init__(f"Unknown job type: {name}")
        self.name = name


class JobParameterError(ValueError):
    """A job is missing a parameter its sync function requires."""


@dataclass(slots=True)
class SyncResult:
    records_processed: int = 0
    details: dict[str, Any] = field(default_factory=dict)


class SyncFunction(Protocol):
    """A unit of work the worker can execute by name."""

    name: str
    requires_week: bool
    requires_user: bool

    async def run(
        self,
        ctx: "WorkerContext",
        credential: Credential,
        week: int | None,
        user_id: str | None,
    ) -> SyncResult: ...


class SyncRegistry:
    """Populated once at start-up, then frozen."""

    def __init__(self) -> None:
        self._functions: dict[str, SyncFunction] = {}
        self._frozen = False

    def register(self, function: SyncFunction) -> None:
        if self._frozen:
            raise RuntimeError(f"Registry is frozen; cannot register {function.name}")
        if function.name in self._functions:
            raise ValueError(f"Duplicate sync function: {function.name}")
        self._functions[function.name] = function

    def freeze(self) -> "SyncRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> SyncFunction:
        try:
            return self._functions[name]
        except KeyError:
            raise UnknownJobError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._functions

    def names(self) -> list[str]:
        return sorted(self._functions)
