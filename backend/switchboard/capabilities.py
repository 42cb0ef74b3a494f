"""
capabilities.py – hardware capability profile consumed by providers.

The profile is produced elsewhere (hardware diagnostics, or the `hardware`
section of config.yaml) and only read here to decide whether a provider/model
combination is worth probing at all.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class CapabilityProfile:
    has_gpu: bool = False
    estimated_vram_gb: float = 0.0
    gpu_name: Optional[str] = None

    def fits(self, required_vram_gb: float) -> bool:
        return self.has_gpu and self.estimated_vram_gb >= required_vram_gb

    @classmethod
    def from_settings(cls, hardware) -> "CapabilityProfile":
        return cls(
            has_gpu=hardware.has_gpu,
            estimated_vram_gb=hardware.estimated_vram_gb,
            gpu_name=hardware.gpu_name or None,
        )
