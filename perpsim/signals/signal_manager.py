"""Signal registry: maps strategy names to signal implementations."""
from __future__ import annotations

from perpsim.signals.base_signal import BaseSignal
from perpsim.signals.bbrsi_v1 import BBRSISignalV1
from perpsim.signals.ema_cross_v1 import EMACrossSignalV1

STRATEGIES: dict[str, type[BaseSignal]] = {
    BBRSISignalV1.name: BBRSISignalV1,
    EMACrossSignalV1.name: EMACrossSignalV1,
}


def build_signal(name: str) -> BaseSignal:
    if name not in STRATEGIES:
        raise ValueError(f"Unsupported strategy '{name}'; expected one of {sorted(STRATEGIES)}")
    return STRATEGIES[name]()
