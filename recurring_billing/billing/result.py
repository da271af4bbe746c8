from __future__ import annotations

from dataclasses import dataclass, field

DEFAULT_MAX_RECORDED_ERRORS = 100


@dataclass
class BillingResult:
    """Counters for one billing run. Owned by the run and passed down the call chain."""

    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    chunks_processed: int = 0
    timeout_reached: bool = False
    circuit_breaker_tripped: bool = False
    error_count: int = 0
    errors: list[str] = field(default_factory=list)
    max_recorded_errors: int = DEFAULT_MAX_RECORDED_ERRORS

    def record_error(self, message: str) -> None:
        self.error_count += 1
        if len(self.errors) < self.max_recorded_errors:
            self.errors.append(message)

    def circuit_open(self, min_processed: int) -> bool:
        return self.failed > self.successful and self.processed > min_processed

    def summary(self) -> dict[str, object]:
        return {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "chunksProcessed": self.chunks_processed,
            "timeoutReached": self.timeout_reached,
        }

    def as_dict(self) -> dict[str, object]:
        payload = self.summary()
        payload["skipped"] = self.skipped
        payload["circuitBreakerTripped"] = self.circuit_breaker_tripped
        payload["errorCount"] = self.error_count
        payload["errors"] = list(self.errors)
        return payload
