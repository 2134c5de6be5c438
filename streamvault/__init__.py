"""
cl-stream: streaming Bitcoin payout settlement.

A payer locks a total amount that vests linearly to a beneficiary after a
cliff; the beneficiary periodically claims the vested portion.
"""

__version__ = "0.3.0"
