# Overview: Branch creation with monotonic numeric codes.

from __future__ import annotations

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Branch
from ..validation import NotFoundError, ValidationError
from .concurrency import run_with_retry, unit_of_work

FIRST_BRANCH_CODE = 1000


def _next_branch_code(session) -> str:
    last = session.query(Branch).order_by(Branch.id.desc()).first()
    if last is None:
        return str(FIRST_BRANCH_CODE)
    try:
        return str(int(last.code) + 1)
    except ValueError:
        raise ValidationError(f"Last branch code {last.code!r} is not numeric")


def create_branch(*, name: str, address: str | None = None, is_active: bool = True) -> Branch:
    """Create a branch; its code is the previous branch's code + 1 ("1000" first)."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("Branch name is required")

    def _op():
        with unit_of_work() as session:
            branch = Branch(
                name=name,
                code=_next_branch_code(session),
                address=address,
                is_active=is_active,
            )
            session.add(branch)
            try:
                session.flush()
            except IntegrityError:
                raise ValidationError("Branch code already taken, retry")
            return branch

    return run_with_retry(_op)


def get_branch(branch_id: int) -> Branch:
    branch = db.session.get(Branch, branch_id)
    if branch is None:
        raise NotFoundError("Branch not found")
    return branch
