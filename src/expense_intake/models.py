"""
Model import hook.

Importing this module ensures all SQLAlchemy models are registered on Base.metadata.
"""

from __future__ import annotations

# Accounts first - every other table references the billing account.
from expense_intake.modules.accounts.models import BillingAccount  # noqa: F401

from expense_intake.modules.audit.models import AuditEvent  # noqa: F401
from expense_intake.modules.categories.models import Category  # noqa: F401
from expense_intake.modules.documents.models import ReceiptFile  # noqa: F401
from expense_intake.modules.expenses.models import Expense  # noqa: F401
from expense_intake.modules.quota.models import MonthlyUsage  # noqa: F401
