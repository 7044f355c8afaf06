"""
Payroll Recon - Payroll Calculators Package

Pure calculation helpers used by the computation engine.

Modules:
- tax_brackets: progressive income tax and the versioned statutory schedules
- travel_allowance: mode and distance banded travel tiers
- attendance: working days, present days and proration
- payroll_formulas: per-identity metric computation
"""

from payroll_recon.services.payroll_calculators.tax_brackets import (
    TaxBracket,
    TaxBracketGapError,
    annual_progressive_tax,
    monthly_tax,
    statutory_monthly_tax,
    validate_brackets,
)
from payroll_recon.services.payroll_calculators.travel_allowance import (
    TravelTier,
    default_travel_tiers,
    resolve_travel_tier,
)
from payroll_recon.services.payroll_calculators.attendance import present_days, prorate, working_days
from payroll_recon.services.payroll_calculators.payroll_formulas import (
    IdentityInputs,
    IdentityResult,
    PeriodContext,
    SalaryHeadRule,
    compute_identity,
)
