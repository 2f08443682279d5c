"""
Circuit Hub - Engine Configuration

Environment-driven settings for the circuit engine. Values are read once at
import time; the engine constructor accepts overrides for each of them.

APPROVAL_REQUEST_TTL_HOURS
- 0 (default): Open approval requests never expire
- > 0: expire_stale_approvals() rejects Open requests older than the TTL

AUTO_APPROVE_INITIATOR
- When true, an actor who requests a gated move and is an eligible approver
  on the step's rule has their Approve recorded automatically
"""

import os
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() == "true"


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.environ.get(name, default).split(",") if item.strip()]


# =============================================================================
# APPROVALS
# =============================================================================

APPROVAL_REQUEST_TTL_HOURS = float(os.environ.get("APPROVAL_REQUEST_TTL_HOURS", "0"))

AUTO_APPROVE_INITIATOR = _env_flag("AUTO_APPROVE_INITIATOR", "false")

# Roles that may withdraw any open approval request
WORKFLOW_ADMIN_ROLES = _env_list("WORKFLOW_ADMIN_ROLES", "Admin")


# Actor recorded for engine-initiated events (auto-approval, expiry)
SYSTEM_ACTOR = "system"
