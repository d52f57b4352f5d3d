"""
Application state: configuration shared by the editor, reconciler and web layer.
"""
import os
from dataclasses import dataclass
from pathlib import Path


@dataclass
class AppState:
    """Runtime configuration for the invoice editing engine."""
    data_root: Path
    default_tax_rate: float = 0.08
    batch_reconcile_delay: float = 0.2
    single_edit_reconcile_delay: float = 0.1
    invalidate_milestones: bool = True

    @classmethod
    def from_env(cls) -> "AppState":
        """Build state from CATERING_* environment variables."""
        return cls(
            data_root=Path(os.environ.get("CATERING_DATA_ROOT", "./data")),
            default_tax_rate=float(os.environ.get("CATERING_TAX_RATE", "0.08")),
            batch_reconcile_delay=int(os.environ.get("CATERING_RECONCILE_DELAY_MS", "200")) / 1000,
            single_edit_reconcile_delay=int(os.environ.get("CATERING_SINGLE_EDIT_DELAY_MS", "100")) / 1000,
        )
