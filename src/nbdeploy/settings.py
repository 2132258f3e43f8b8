from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

SNAPSHOT_POLL_INTERVAL = float(os.environ.get("NBDEPLOY_SNAPSHOT_POLL_INTERVAL", "1.0"))
RUN_POLL_INTERVAL = float(os.environ.get("NBDEPLOY_RUN_POLL_INTERVAL", "2.0"))
SNAPSHOT_MAX_POLLS = int(os.environ.get("NBDEPLOY_SNAPSHOT_MAX_POLLS", "3600"))  # 0 = unbounded
RUN_MAX_POLLS = int(os.environ.get("NBDEPLOY_RUN_MAX_POLLS", "43200"))  # 0 = unbounded
KERNEL_URL: Optional[str] = os.environ.get("NBDEPLOY_KERNEL_URL")
ROK_URL = os.environ.get("NBDEPLOY_ROK_URL", "")
KFP_URL = os.environ.get("NBDEPLOY_KFP_URL", "")


@dataclass(frozen=True)
class DeploySettings:
    """Polling and link settings handed to the deployment orchestrator."""
    snapshot_poll_interval: float = SNAPSHOT_POLL_INTERVAL
    run_poll_interval: float = RUN_POLL_INTERVAL
    snapshot_max_polls: int = SNAPSHOT_MAX_POLLS
    run_max_polls: int = RUN_MAX_POLLS
    rok_url: str = ROK_URL
    kfp_url: str = KFP_URL
