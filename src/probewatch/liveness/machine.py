"""Probe state machine: New -> Up <-> Down.

Transitions are idempotent and committed through the store's
compare-and-swap on ``current_state_id``; a lost race is re-read and
retried, so concurrent callers on one probe produce a single State/Event
pair between them.
"""

import logging
import time
from datetime import datetime

from probewatch.alerts.notifier import EventNotifier
from probewatch.clock import Clock, SystemClock, as_naive_utc
from probewatch.liveness.errors import ConflictError, InvalidStateError
from probewatch.liveness.models import EmittedEvent, Event, ProbeStatus
from probewatch.liveness.store import LivenessStore

logger = logging.getLogger(__name__)

_TARGETS = (ProbeStatus.up, ProbeStatus.down)


def coerce_target(target: object) -> ProbeStatus:
    """Validate a requested target state. Only Up and Down are accepted."""
    if isinstance(target, ProbeStatus):
        status = target
    elif isinstance(target, str):
        try:
            status = ProbeStatus(target)
        except ValueError:
            raise InvalidStateError(f"Unknown probe state {target!r}") from None
    else:
        raise InvalidStateError(f"Probe state must be a string, got {type(target).__name__}")

    if status not in _TARGETS:
        raise InvalidStateError(f"Cannot transition a probe to {status.value}")
    return status


class ProbeStateMachine:
    def __init__(
        self,
        store: LivenessStore,
        clock: Clock | None = None,
        notifier: EventNotifier | None = None,
        max_attempts: int = 5,
        backoff: float = 0.05,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.notifier = notifier
        self.max_attempts = max_attempts
        self.backoff = backoff

    def transition(
        self,
        probe_id: int,
        target: ProbeStatus | str,
        *,
        overdue_at: datetime | None = None,
    ) -> Event | None:
        """Move a probe to ``target``; return the new Event, or None if nothing changed.

        With ``overdue_at`` the transition only applies while the probe's
        next heartbeat deadline is still before that instant.

        Raises:
            InvalidStateError: target is not Up or Down.
            NotFoundError: the probe does not exist.
            ConflictError: every attempt lost a race with another writer.
            StorageError: the store failed; nothing was committed.
        """
        status = coerce_target(target)

        for attempt in range(1, self.max_attempts + 1):
            probe = self.store.get_probe(probe_id)
            if probe.state == status:
                logger.debug("Probe %s already %s", probe_id, status.value)
                return None
            if overdue_at is not None and not _is_overdue(probe.next_heartbeat_at, overdue_at):
                logger.debug("Probe %s no longer overdue, skipping", probe_id)
                return None

            try:
                emitted = self.store.commit_transition(
                    probe_id,
                    probe.current_state_id,
                    status,
                    self.clock.now(),
                    overdue_at=overdue_at,
                )
            except ConflictError:
                if attempt == self.max_attempts:
                    logger.warning(
                        "Probe %s: gave up on %s after %d conflicting attempts",
                        probe_id,
                        status.value,
                        attempt,
                    )
                    raise
                time.sleep(self.backoff * 2 ** (attempt - 1))
                continue

            logger.info(
                "Probe %s: %s -> %s (event %s)",
                probe_id,
                ProbeStatus(probe.state).value,
                status.value,
                emitted.event.id,
            )
            self._publish(emitted)
            return emitted.event

        raise ConflictError(f"Probe {probe_id}: transition to {status.value} did not complete")

    def record_heartbeat(
        self,
        probe_id: int,
        next_deadline: datetime,
        observed_at: datetime,
        wan_ip: str | None = None,
        lan_ip: str | None = None,
    ) -> Event | None:
        """Refresh heartbeat bookkeeping, then make sure the probe is Up.

        The bookkeeping update stays committed even if the transition fails.
        """
        self.store.update_heartbeat(
            probe_id,
            observed_at=observed_at,
            next_deadline=next_deadline,
            wan_ip=wan_ip,
            lan_ip=lan_ip,
        )
        return self.transition(probe_id, ProbeStatus.up)

    def _publish(self, emitted: EmittedEvent) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.publish(emitted)
        except Exception:
            logger.exception("Failed to publish event %s", emitted.event.id)


def _is_overdue(deadline: datetime | None, now: datetime) -> bool:
    return deadline is not None and as_naive_utc(deadline) < as_naive_utc(now)
