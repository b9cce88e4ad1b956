"""Process-wide runtime context.

The daemon keeps a small amount of process-wide mutable state: running spend
totals, the per-session pending-message slots, the provider registry and the
path resolver. ``RuntimeContext`` holds all of it explicitly and is passed to
the components that need it; tests build a fresh one per case.

Spend totals and pending messages are updated from many concurrently
advancing sessions, so both are guarded by a lock and expose only atomic
operations (record, set, consuming get).
"""

import threading
from dataclasses import replace

import structlog

from mergeloop.models.domain import SpendTotals
from mergeloop.paths import PathResolver
from mergeloop.providers.registry import ProviderRegistry

log = structlog.get_logger(__name__)


class SpendTracker:
    """Lock-protected running totals of model usage."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._totals = SpendTotals()

    def record(self, cost_usd: float, output_tokens: int, input_tokens: int) -> SpendTotals:
        """Add one usage report and return the new totals."""
        with self._lock:
            self._totals.cost_usd += cost_usd
            self._totals.output_tokens += output_tokens
            self._totals.input_tokens += input_tokens
            self._totals.calls += 1
            return replace(self._totals)

    def totals(self) -> SpendTotals:
        """Snapshot of the current totals."""
        with self._lock:
            return replace(self._totals)

    def reset(self) -> None:
        with self._lock:
            self._totals = SpendTotals()


class PendingMessages:
    """Per-session message slots with an exclusive consuming get.

    Setting a message overwrites any unread one for that session. Consuming
    reads and clears the slot atomically, so each message reaches exactly
    one advancement step.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._messages: dict[str, str] = {}

    def set(self, session_id: str, message: str) -> None:
        with self._lock:
            if session_id in self._messages:
                log.info("pending_message_replaced", session_id=session_id)
            self._messages[session_id] = message

    def consume(self, session_id: str) -> str:
        """Return and clear the session's message ("" when none)."""
        with self._lock:
            return self._messages.pop(session_id, "")

    def discard(self, session_id: str) -> None:
        with self._lock:
            self._messages.pop(session_id, None)

    def has(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._messages

    def clear(self) -> None:
        with self._lock:
            self._messages.clear()


class RuntimeContext:
    """Explicit container for process-wide daemon state.

    Lifecycle: construct once at startup (the CLI does this), pass it to the
    daemon, and call ``reset()`` to drop accumulated state.
    """

    def __init__(
        self,
        paths: PathResolver | None = None,
        providers: ProviderRegistry | None = None,
    ) -> None:
        self.paths = paths or PathResolver()
        self.providers = providers or ProviderRegistry()
        self.spend = SpendTracker()
        self.pending = PendingMessages()

    def record_spend(self, cost_usd: float, output_tokens: int, input_tokens: int) -> SpendTotals:
        return self.spend.record(cost_usd, output_tokens, input_tokens)

    def set_pending_message(self, session_id: str, message: str) -> None:
        self.pending.set(session_id, message)

    def consume_pending_message(self, session_id: str) -> str:
        return self.pending.consume(session_id)

    def discard_pending_message(self, session_id: str) -> None:
        self.pending.discard(session_id)

    def reset(self) -> None:
        """Clear spend totals and pending messages and forget resolved paths."""
        self.spend.reset()
        self.pending.clear()
        self.paths.reset()
