"""Chart of Accounts service.

Handles CRUD operations on GL accounts with:
- Uniqueness of ``(tenant, company, account_code)``
- Hierarchical validation (parent in the same tenant/company, no cycles)
- System accounts protected from edits and deletion
- Deletion refused while an account has journal lines or children;
  deactivation is the supported alternative
- Append-only audit trail on every modification
"""

import logging
from typing import Any

from sqlalchemy import select, exists
from sqlalchemy.ext.asyncio import AsyncSession

from ledger.config import settings
from ledger.errors import (
    BusinessRuleViolationError,
    LedgerError,
    NotFoundError,
    ReferentialIntegrityError,
    StateConflictError,
    ValidationFailedError,
)
from ledger.models.gl import (
    Account,
    AccountAudit,
    AccountCategory,
    AccountSubCategory,
    AccountType,
    BalanceBucket,
    JournalLine,
    NORMAL_BALANCE,
)

logger = logging.getLogger(__name__)


class COAError(LedgerError):
    """Chart of Accounts error."""


class AccountNotFoundError(COAError, NotFoundError):
    pass


class DuplicateAccountError(COAError, ValidationFailedError):
    pass


class InvalidParentError(COAError, ReferentialIntegrityError):
    pass


class SystemAccountError(COAError, StateConflictError):
    pass


class AccountInUseError(COAError, BusinessRuleViolationError):
    pass


_BUCKETED = (AccountCategory.ASSET, AccountCategory.LIABILITY)


# ---------------------------------------------------------------------------
# Audit helper
# ---------------------------------------------------------------------------

async def _audit_change(
    db: AsyncSession,
    account_id: int,
    field: str,
    old_val: Any,
    new_val: Any,
    user_id: int | None,
) -> None:
    def _text(val: Any) -> str | None:
        if val is None:
            return None
        return val.value if hasattr(val, "value") else str(val)

    db.add(AccountAudit(
        account_id=account_id,
        field_changed=field,
        old_value=_text(old_val),
        new_value=_text(new_val),
        changed_by=user_id,
    ))


# ---------------------------------------------------------------------------
# Hierarchy helpers
# ---------------------------------------------------------------------------

async def _resolve_parent(
    db: AsyncSession, parent_id: int, *, tenant_id: int, company_id: int
) -> Account:
    parent = await get_account(db, parent_id, tenant_id=tenant_id)
    if parent is None or parent.company_id != company_id:
        raise InvalidParentError("Invalid parent account")
    return parent


async def _collect_descendant_ids(db: AsyncSession, account_id: int) -> list[int]:
    """Recursively gather all descendant account IDs (children, grandchildren, etc.)."""
    result = await db.execute(
        select(Account.id).where(Account.parent_id == account_id)
    )
    child_ids = list(result.scalars().all())
    all_ids = list(child_ids)
    for cid in child_ids:
        all_ids.extend(await _collect_descendant_ids(db, cid))
    return all_ids


def _check_bucket(category: AccountCategory, bucket: BalanceBucket | None) -> None:
    if bucket is not None and category not in _BUCKETED:
        raise ValidationFailedError(
            f"Balance bucket applies to asset and liability accounts only, not {category.value}"
        )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def list_accounts(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    category: AccountCategory | None = None,
    is_active: bool | None = None,
    parent_id: int | None = None,
    search: str | None = None,
) -> list[Account]:
    """List accounts ordered by code, with optional filters."""
    q = (
        select(Account)
        .where(Account.tenant_id == tenant_id, Account.company_id == company_id)
        .order_by(Account.account_code)
    )
    if category:
        q = q.where(Account.account_category == category)
    if is_active is not None:
        q = q.where(Account.is_active == is_active)
    if parent_id is not None:
        q = q.where(Account.parent_id == parent_id)
    if search:
        pattern = f"%{search}%"
        q = q.where(Account.name.ilike(pattern) | Account.account_code.ilike(pattern))

    result = await db.execute(q)
    return list(result.scalars().all())


async def get_account(
    db: AsyncSession, account_id: int, *, tenant_id: int
) -> Account | None:
    result = await db.execute(
        select(Account).where(Account.id == account_id, Account.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()


async def get_account_by_code(
    db: AsyncSession, code: str, *, tenant_id: int, company_id: int
) -> Account | None:
    result = await db.execute(
        select(Account).where(
            Account.tenant_id == tenant_id,
            Account.company_id == company_id,
            Account.account_code == code,
        )
    )
    return result.scalar_one_or_none()


async def find_account_by_role(
    db: AsyncSession,
    sub_category: AccountSubCategory,
    *,
    tenant_id: int,
    company_id: int,
    account_category: AccountCategory | None = None,
) -> Account | None:
    """First active account carrying posting role *sub_category* (lowest code wins)."""
    q = (
        select(Account)
        .where(
            Account.tenant_id == tenant_id,
            Account.company_id == company_id,
            Account.sub_category == sub_category,
            Account.is_active.is_(True),
        )
        .order_by(Account.account_code)
        .limit(1)
    )
    if account_category:
        q = q.where(Account.account_category == account_category)
    result = await db.execute(q)
    return result.scalar_one_or_none()


async def create_account(
    db: AsyncSession,
    *,
    tenant_id: int,
    company_id: int,
    account_code: str,
    name: str,
    account_category: AccountCategory,
    account_type: AccountType | None = None,
    sub_category: AccountSubCategory | None = None,
    balance_bucket: BalanceBucket | None = None,
    currency_code: str | None = None,
    description: str | None = None,
    parent_id: int | None = None,
    is_system_account: bool = False,
    created_by: int | None = None,
) -> Account:
    """Create a new account.

    The normal-balance side defaults from the category (assets and expenses
    are debit-normal, everything else credit-normal).
    """
    existing = await get_account_by_code(
        db, account_code, tenant_id=tenant_id, company_id=company_id
    )
    if existing:
        raise DuplicateAccountError(f"Account with code {account_code} already exists")

    level = 1
    if parent_id:
        parent = await _resolve_parent(
            db, parent_id, tenant_id=tenant_id, company_id=company_id
        )
        level = parent.level + 1

    _check_bucket(account_category, balance_bucket)

    account = Account(
        tenant_id=tenant_id,
        company_id=company_id,
        account_code=account_code,
        name=name,
        description=description,
        account_category=account_category,
        account_type=account_type or NORMAL_BALANCE[account_category],
        sub_category=sub_category,
        balance_bucket=balance_bucket,
        currency_code=currency_code or settings.default_currency,
        parent_id=parent_id,
        level=level,
        is_active=True,
        is_system_account=is_system_account,
        created_by=created_by,
    )
    db.add(account)
    await db.flush()
    await db.refresh(account)
    logger.info("Created GL account %s: %s", account.account_code, account.name)
    return account


async def update_account(
    db: AsyncSession,
    account_id: int,
    *,
    tenant_id: int,
    user_id: int | None = None,
    **fields,
) -> Account:
    """Update mutable fields on an account and log changes.

    System accounts cannot be modified at all, activation included.
    """
    account = await get_account(db, account_id, tenant_id=tenant_id)
    if account is None:
        raise AccountNotFoundError("Account not found")
    if account.is_system_account:
        raise SystemAccountError("Cannot modify system accounts")

    mutable = {
        "name", "description", "sub_category", "balance_bucket", "parent_id", "is_active",
    }
    unknown = set(fields) - mutable
    if unknown:
        raise ValidationFailedError(f"Fields cannot be updated: {sorted(unknown)}")

    if "balance_bucket" in fields:
        _check_bucket(account.account_category, fields["balance_bucket"])

    if "parent_id" in fields and fields["parent_id"] != account.parent_id:
        new_parent_id = fields["parent_id"]
        if new_parent_id is None:
            account.level = 1
        else:
            if new_parent_id == account.id:
                raise InvalidParentError("Invalid parent account")
            parent = await _resolve_parent(
                db, new_parent_id, tenant_id=tenant_id, company_id=account.company_id
            )
            if new_parent_id in await _collect_descendant_ids(db, account.id):
                raise InvalidParentError("Invalid parent account")
            account.level = parent.level + 1

    for key, value in fields.items():
        old = getattr(account, key)
        if old != value:
            await _audit_change(db, account_id, key, old, value, user_id)
            setattr(account, key, value)

    await db.flush()
    await db.refresh(account)
    return account


async def deactivate_account(
    db: AsyncSession, account_id: int, *, tenant_id: int, user_id: int | None = None
) -> Account:
    """Deactivate an account.  Prevents further postings."""
    return await update_account(
        db, account_id, tenant_id=tenant_id, user_id=user_id, is_active=False
    )


async def activate_account(
    db: AsyncSession, account_id: int, *, tenant_id: int, user_id: int | None = None
) -> Account:
    return await update_account(
        db, account_id, tenant_id=tenant_id, user_id=user_id, is_active=True
    )


async def delete_account(db: AsyncSession, account_id: int, *, tenant_id: int) -> None:
    """Hard-delete an account that has never been used."""
    account = await get_account(db, account_id, tenant_id=tenant_id)
    if account is None:
        raise AccountNotFoundError("Account not found")
    if account.is_system_account:
        raise SystemAccountError("Cannot delete system accounts")

    has_lines = await db.execute(
        select(exists().where(JournalLine.account_id == account_id))
    )
    if has_lines.scalar():
        raise AccountInUseError("Cannot delete account with existing transactions")

    has_children = await db.execute(
        select(exists().where(Account.parent_id == account_id))
    )
    if has_children.scalar():
        raise AccountInUseError("Cannot delete account with child accounts")

    await db.delete(account)
    await db.flush()
    logger.info("Deleted GL account %s: %s", account.account_code, account.name)


async def get_account_tree(
    db: AsyncSession, *, tenant_id: int, company_id: int
) -> list[dict]:
    """Nested ``{"account": Account, "children": [...]}`` nodes, roots first."""
    accounts = await list_accounts(db, tenant_id=tenant_id, company_id=company_id)
    nodes = {a.id: {"account": a, "children": []} for a in accounts}
    roots = []
    for acct in accounts:
        node = nodes[acct.id]
        if acct.parent_id and acct.parent_id in nodes:
            nodes[acct.parent_id]["children"].append(node)
        else:
            roots.append(node)
    return roots
