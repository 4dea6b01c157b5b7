"""
Preflight check

Validates a plan before it is armed: the detection page must answer, a manual
plan must open in the future and an autopilot plan needs somewhere to submit.
"""
import logging
from typing import Optional

import httpx

from ..common.models import (
    AccountMode,
    PreflightReport,
    PreflightStatus,
    RegistrationPlan,
    utcnow,
)

logger = logging.getLogger(__name__)


async def run_preflight(
    plan: RegistrationPlan,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = 5.0,
) -> PreflightReport:
    """
    Run the preflight checks for a plan.

    Args:
        plan: Plan to check
        client: HTTP client to probe with; a temporary one is created if omitted
        timeout: Seconds to wait for the detection URL

    Returns:
        Report with the overall status and one line per check
    """
    checks = []
    failed = False

    if plan.account_mode == AccountMode.AUTOPILOT:
        if plan.registration_url:
            checks.append("✓ Autopilot registration URL configured")
        else:
            checks.append("✗ Autopilot mode needs a registration URL")
            failed = True
    else:
        checks.append("ℹ Assist mode - a parent completes protected steps")

    if plan.is_exact:
        if plan.open_at > utcnow():
            checks.append(f"✓ Opens at {plan.open_at.isoformat()}")
        else:
            checks.append(f"✗ Open time {plan.open_at.isoformat()} is in the past")
            failed = True

    if plan.detect_url:
        owns_client = client is None
        client = client or httpx.AsyncClient(follow_redirects=True)
        try:
            response = await client.head(plan.detect_url, timeout=timeout)
            if response.is_success:
                checks.append(f"✓ Detect URL reachable ({response.status_code})")
            else:
                checks.append(f"✗ Detect URL returned {response.status_code}")
                failed = True
        except httpx.HTTPError as e:
            checks.append(f"✗ Detect URL unreachable: {e}")
            failed = True
        finally:
            if owns_client:
                await client.aclose()
    else:
        checks.append("ℹ No detect URL configured")

    status = PreflightStatus.FAILED if failed else PreflightStatus.PASSED
    logger.info(f"Preflight for plan {plan.id}: {status.value} ({len(checks)} checks)")
    return PreflightReport(plan_id=plan.id, status=status, checks=checks)
