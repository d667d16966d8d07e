"""Verification engine.

Read-only checks over extracted artifacts, the generated boot
configuration and imported image sets.
"""

from netboot_imagegen.verify.engine import (
    VerificationReport,
    VerificationState,
    build_report,
    run,
    verify_all,
)

__all__ = [
    "VerificationReport",
    "VerificationState",
    "build_report",
    "run",
    "verify_all",
]
