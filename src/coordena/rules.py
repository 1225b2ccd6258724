import re
from datetime import time
from typing import Optional

ROLES = ("student", "professor", "admin")
USER_STATUSES = ("pending", "approved", "rejected")
RESERVATION_STATUSES = ("pending", "approved", "rejected")

# Roles allowed to manage any reservation (approve, reject, edit, delete).
RESERVATION_MANAGERS = ("admin", "professor")


def normalize_email(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def institutional_email_pattern(
    domain: str, student_subdomain: str = "alunos", professor_subdomain: str = "professor"
) -> "re.Pattern[str]":
    """Build the pattern for ``<local>@(alunos|professor).<domain>`` addresses."""

    subdomains = "|".join(re.escape(s) for s in (student_subdomain, professor_subdomain))
    return re.compile(
        rf"^[\w.%+-]+@({subdomains})\.{re.escape(domain)}$",
        re.IGNORECASE,
    )


def infer_role(
    email: str,
    domain: str,
    student_subdomain: str = "alunos",
    professor_subdomain: str = "professor",
) -> Optional[str]:
    """Return the role implied by an institutional email.

    Returns ``None`` when the address does not belong to the institution.
    """
    match = institutional_email_pattern(
        domain, student_subdomain, professor_subdomain
    ).match(normalize_email(email))
    if not match:
        return None
    if match.group(1).lower() == professor_subdomain.lower():
        return "professor"
    return "student"


def windows_overlap(start_a: time, end_a: time, start_b: time, end_b: time) -> bool:
    """Half-open interval overlap: touching windows do not overlap."""
    return start_a < end_b and start_b < end_a
