"""
Tobby - expense tracking backend.

Transactions, categories and budgets per user, plus recurring transaction
rules that a daily job turns into real transactions.
"""

__version__ = "1.0.0"
