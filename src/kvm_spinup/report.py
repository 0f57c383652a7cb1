"""End-of-batch reporting."""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from .models import BatchRun, VmResult


@dataclass
class BatchReport:
    """Summary of a finished batch."""

    total: int
    succeeded: int
    failed: int
    results: List[VmResult] = field(default_factory=list)
    duration: Optional[float] = None  # seconds

    @classmethod
    def from_batch(cls, batch: BatchRun) -> "BatchReport":
        # Results follow installation order
        ordered = [batch.results[s.hostname] for s in batch.specs if s.hostname in batch.results]
        duration = None
        if batch.completed is not None:
            duration = (batch.completed - batch.started).total_seconds()
        return cls(
            total=len(batch.specs),
            succeeded=len(batch.succeeded),
            failed=len(batch.failed),
            results=ordered,
            duration=duration,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "duration": round(self.duration, 1) if self.duration is not None else None,
            "vms": [
                {
                    "hostname": r.hostname,
                    "distribution": r.distribution.value,
                    "outcome": r.outcome.value,
                    "phase": r.phase.value,
                    "reason": r.reason,
                    "config_path": r.config_path,
                    "duration": round(r.duration, 1),
                }
                for r in self.results
            ],
        }

    def to_text(self) -> str:
        lines = [
            "Batch Installation Summary",
            "=" * 40,
            f"Total VMs: {self.total}",
            f"Successful: {self.succeeded}",
            f"Failed: {self.failed}",
        ]
        if self.results:
            lines.append("")
        for r in self.results:
            if r.success:
                lines.append(f"  [OK]   {r.hostname} ({r.distribution.value})")
                continue
            lines.append(
                f"  [FAIL] {r.hostname} ({r.distribution.value}) at {r.phase.value}: {r.reason}"
            )
            if r.config_path:
                lines.append(f"         kickstart kept at {r.config_path}")
        if self.succeeded:
            lines += [
                "",
                "Manage VMs:",
                "  virsh list --all",
                "  virsh start <vm-name>",
                "  virsh console <vm-name>",
            ]
        return "\n".join(lines)

    def render(self, output_format: str = "text") -> str:
        if output_format == "json":
            return json.dumps(self.to_dict(), indent=2)
        if output_format == "yaml":
            return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=False)
        return self.to_text()
