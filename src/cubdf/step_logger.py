"""Event logging for integrator steps."""

import time
from collections import deque
from typing import Any, Optional

import attrs


EVENT_KINDS = frozenset(
    {
        "initial_step",
        "accept",
        "reject_error",
        "reject_convergence",
        "order_change",
        "order_reset",
        "fatal",
    }
)


@attrs.define(frozen=True)
class StepEvent:
    """Record of a single step decision.

    Attributes
    ----------
    kind : str
        One of :data:`EVENT_KINDS`.
    t : float
        Integration time at which the decision was taken.
    dt : float
        Step size attempted (or chosen, for ``initial_step``).
    order : int
        BDF order in use when the decision was taken.
    error_norm : float or None
        Weighted local error estimate, when one was computed.
    timestamp : float
        Wall-clock time from :func:`time.perf_counter`.
    metadata : dict
        Optional extra information (new order, shrink factor, ...).
    """
    kind: str = attrs.field(validator=attrs.validators.in_(EVENT_KINDS))
    t: float = attrs.field(converter=float)
    dt: float = attrs.field(converter=float)
    order: int = attrs.field(converter=int)
    error_norm: Optional[float] = attrs.field(default=None)
    timestamp: float = attrs.field(factory=time.perf_counter)
    metadata: dict = attrs.field(factory=dict)


class StepLogger:
    """Callback-style record of accept/reject/order decisions.

    Parameters
    ----------
    verbosity : str or None, default='default'
        Output verbosity level. Options:
        - None: Record silently
        - 'default': Print a summary on :meth:`print_summary`
        - 'verbose': Also print rejections and order changes as they occur
        - 'debug': Print every event
    max_events : int or None, default=10000
        Number of most recent events kept in :attr:`events`. ``None``
        keeps every event. :meth:`counts` covers all events recorded since
        the last :meth:`clear` regardless of this limit.

    Notes
    -----
    One logger belongs to one solver instance.
    """

    def __init__(
        self,
        verbosity: Optional[str] = "default",
        max_events: Optional[int] = 10000,
    ) -> None:
        if verbosity == "None":
            verbosity = None
        if verbosity not in {None, "default", "verbose", "debug"}:
            raise ValueError(
                f"verbosity must be None, 'default', 'verbose', or 'debug', "
                f"got '{verbosity}'"
            )
        if max_events is not None and max_events < 1:
            raise ValueError(
                f"max_events must be a positive integer or None, "
                f"got {max_events}"
            )
        self.verbosity = verbosity
        self.max_events = max_events
        self.events: deque[StepEvent] = deque(maxlen=max_events)
        self._counts = dict.fromkeys(EVENT_KINDS, 0)

    def record(
        self,
        kind: str,
        t: float,
        dt: float,
        order: int,
        error_norm: Optional[float] = None,
        **metadata: Any,
    ) -> StepEvent:
        """Store an event and print it if the verbosity asks for it.

        Once :attr:`max_events` events are held, the oldest is dropped.
        """
        event = StepEvent(
            kind=kind,
            t=t,
            dt=dt,
            order=order,
            error_norm=error_norm,
            metadata=metadata,
        )
        self.events.append(event)
        self._counts[kind] += 1

        if self.verbosity == "debug":
            print(f"[DEBUG] {self._format(event)}")
        elif self.verbosity == "verbose" and kind != "accept":
            print(self._format(event))
        return event

    @staticmethod
    def _format(event: StepEvent) -> str:
        text = (
            f"{event.kind}: t={event.t:.6e} dt={event.dt:.6e} "
            f"q={event.order}"
        )
        if event.error_norm is not None:
            text += f" err={event.error_norm:.3e}"
        if event.metadata:
            extras = ", ".join(
                f"{key}={value}" for key, value in event.metadata.items()
            )
            text += f" ({extras})"
        return text

    def events_of(self, kind: str) -> list[StepEvent]:
        """Return the stored events of ``kind`` in chronological order."""
        if kind not in EVENT_KINDS:
            raise ValueError(f"Unknown event kind '{kind}'")
        return [event for event in self.events if event.kind == kind]

    def counts(self) -> dict[str, int]:
        """Return the number of events recorded for each kind."""
        return dict(self._counts)

    def clear(self) -> None:
        """Discard all recorded events."""
        self.events.clear()
        self._counts = dict.fromkeys(EVENT_KINDS, 0)

    def print_summary(self) -> None:
        """Print event counts.

        Only prints when verbosity is not ``None``.
        """
        if self.verbosity is None:
            return
        counts = self.counts()
        print("\nStep Summary:")
        for kind in sorted(counts):
            print(f"  {kind}: {counts[kind]}")
