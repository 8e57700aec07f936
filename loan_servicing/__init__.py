"""
Loan Servicing Core

Interest accrual, arrears tracking and payment allocation for fixed-term
amortized loans and open-ended biweekly (quincena) loans. All money math uses
Decimal; all dates are explicit calendar dates.
"""

__version__ = "1.0.0"
