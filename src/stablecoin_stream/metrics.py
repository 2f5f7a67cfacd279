"""Process-wide pipeline counters.

One ``PipelineCounters`` instance is created by the service and passed to
every stage that updates it. Health reporting reads ``snapshot()``.
"""

import logging
from dataclasses import asdict, dataclass

logger = logging.getLogger(__name__)


@dataclass
class PipelineCounters:
    """Monotonic counters updated by the pipeline stages."""

    blocks_processed: int = 0
    transfers_found: int = 0
    errors_count: int = 0
    durable_publishes: int = 0
    broadcasts_sent: int = 0
    blocks_retried: int = 0
    entries_acknowledged: int = 0
    malformed_entries: int = 0
    last_processed_block: int | None = None

    def record_block(self, block_number: int) -> None:
        self.blocks_processed += 1
        if self.last_processed_block is None or block_number > self.last_processed_block:
            self.last_processed_block = block_number

    def record_transfers(self, count: int) -> None:
        self.transfers_found += count

    def record_error(self) -> None:
        self.errors_count += 1

    def record_durable_publish(self) -> None:
        self.durable_publishes += 1

    def record_broadcast(self) -> None:
        self.broadcasts_sent += 1

    def record_block_retry(self) -> None:
        self.blocks_retried += 1

    def record_ack(self) -> None:
        self.entries_acknowledged += 1

    def record_malformed_entry(self) -> None:
        self.malformed_entries += 1

    def snapshot(self) -> dict[str, int | None]:
        """Copy of the current values."""
        return asdict(self)

    def log_metrics(self) -> None:
        logger.info(
            f"Pipeline Metrics: "
            f"Blocks={self.blocks_processed}, "
            f"Transfers={self.transfers_found}, "
            f"Errors={self.errors_count}, "
            f"StreamPublishes={self.durable_publishes}, "
            f"Broadcasts={self.broadcasts_sent}, "
            f"Acked={self.entries_acknowledged}, "
            f"LastBlock={self.last_processed_block}"
        )
