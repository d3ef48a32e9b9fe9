"""Cross-process admission control for rate-limited external services."""

from notesync.core.rate_limit.gate import GateSlot, GateTimeout, ResourceGate

__all__ = ["GateSlot", "GateTimeout", "ResourceGate"]
