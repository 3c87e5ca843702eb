"""Pluggable payroll calculator and calculation hashing.

Statutory formulas are deliberately simple flat rates; a jurisdiction-specific
calculator can be swapped in through the `PayrollCalculator` protocol.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Protocol

from payledger.common.money import apply_rate
from payledger.services.jobs.snapshots import EmployeeSnapshotV1, PayrollCalculationSnapshotV1, schema_version


def calculation_hash(inputs: dict) -> str:
    """sha256 over key-sorted JSON of the calculation inputs."""

    encoded = json.dumps(inputs, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def tax_year_for(period_start: date) -> int:
    # Tax years run March to February and are named by their ending year.
    return period_start.year + 1 if period_start.month >= 3 else period_start.year


def adjustment_applies(adjustment, period_start: date, period_end: date) -> bool:
    if not adjustment.is_active:
        return False
    if adjustment.period_start is None and adjustment.period_end is None:
        return True
    starts = adjustment.period_start or date.min
    ends = adjustment.period_end or date.max
    return starts <= period_end and ends >= period_start


@dataclass
class PayrollCalculation:
    gross_salary_cents: int
    paye_cents: int
    uif_cents: int
    sdl_cents: int
    total_additions_cents: int
    total_deductions_cents: int
    net_salary_cents: int
    adjustments: list[dict]
    adjustment_inputs: list[dict]
    calculation_version: int
    calculation_hash: str
    snapshot: dict
    employee_snapshot: dict
    rates: dict[str, str] = field(default_factory=dict)

    @property
    def has_negative_net(self) -> bool:
        return self.net_salary_cents < 0


class PayrollCalculator(Protocol):
    calculation_version: int

    def calculate(self, employee, adjustments, period_start: date, period_end: date) -> PayrollCalculation: ...


class FlatRateCalculator:
    """PAYE, UIF (capped) and SDL as flat rates of gross salary."""

    calculation_version = schema_version(PayrollCalculationSnapshotV1)

    def __init__(
        self,
        paye_rate: Decimal,
        uif_rate: Decimal,
        uif_monthly_cap_cents: int,
        sdl_rate: Decimal,
    ) -> None:
        self.paye_rate = Decimal(str(paye_rate))
        self.uif_rate = Decimal(str(uif_rate))
        self.uif_monthly_cap_cents = uif_monthly_cap_cents
        self.sdl_rate = Decimal(str(sdl_rate))

    @classmethod
    def from_settings(cls, settings) -> "FlatRateCalculator":
        return cls(
            paye_rate=settings.paye_rate,
            uif_rate=settings.uif_rate,
            uif_monthly_cap_cents=settings.uif_monthly_cap_cents,
            sdl_rate=settings.sdl_rate,
        )

    def calculate(self, employee, adjustments, period_start: date, period_end: date) -> PayrollCalculation:
        gross = employee.gross_salary_cents
        paye = apply_rate(gross, self.paye_rate)
        uif = 0 if employee.uif_exempt else min(apply_rate(gross, self.uif_rate), self.uif_monthly_cap_cents)
        sdl = apply_rate(gross, self.sdl_rate)

        applied = sorted(
            (a for a in adjustments if adjustment_applies(a, period_start, period_end)),
            key=lambda a: a.adjustment_id,
        )
        lines = []
        inputs = []
        additions = deductions = 0
        for adjustment in applied:
            if adjustment.amount_type == "percentage":
                amount = apply_rate(gross, Decimal(adjustment.rate_bps) / Decimal(10_000))
            else:
                amount = adjustment.amount_cents
            if adjustment.adjustment_type == "addition":
                additions += amount
            else:
                deductions += amount
            lines.append(
                {
                    "adjustment_id": adjustment.adjustment_id,
                    "name": adjustment.name,
                    "adjustment_type": adjustment.adjustment_type,
                    "amount_cents": amount,
                }
            )
            inputs.append(
                {
                    "adjustment_id": adjustment.adjustment_id,
                    "adjustment_type": adjustment.adjustment_type,
                    "amount_type": adjustment.amount_type,
                    "amount_cents": adjustment.amount_cents,
                    "rate_bps": adjustment.rate_bps,
                }
            )

        net = gross - paye - uif + additions - deductions
        rates = {
            "paye_rate": str(self.paye_rate),
            "uif_rate": str(self.uif_rate),
            "uif_monthly_cap_cents": str(self.uif_monthly_cap_cents),
            "sdl_rate": str(self.sdl_rate),
        }
        hash_inputs = {
            "employee_id": employee.employee_id,
            "gross_salary_cents": gross,
            "uif_exempt": bool(employee.uif_exempt),
            "period_start": period_start.isoformat(),
            "period_end": period_end.isoformat(),
            "adjustments": inputs,
            "tax_year": tax_year_for(period_start),
            "rates": rates,
            "calculation_version": self.calculation_version,
        }
        snapshot = PayrollCalculationSnapshotV1(
            gross_salary_cents=gross,
            paye_cents=paye,
            uif_cents=uif,
            sdl_cents=sdl,
            total_additions_cents=additions,
            total_deductions_cents=deductions,
            net_salary_cents=net,
            adjustments=lines,
            rates=rates,
            tax_year=tax_year_for(period_start),
        )
        employee_snapshot = EmployeeSnapshotV1(
            employee_id=employee.employee_id,
            name=employee.name,
            gross_salary_cents=gross,
            uif_exempt=bool(employee.uif_exempt),
            tax_number=employee.tax_number,
        )
        return PayrollCalculation(
            gross_salary_cents=gross,
            paye_cents=paye,
            uif_cents=uif,
            sdl_cents=sdl,
            total_additions_cents=additions,
            total_deductions_cents=deductions,
            net_salary_cents=net,
            adjustments=lines,
            adjustment_inputs=inputs,
            calculation_version=self.calculation_version,
            calculation_hash=calculation_hash(hash_inputs),
            snapshot=snapshot.model_dump(),
            employee_snapshot=employee_snapshot.model_dump(),
            rates=rates,
        )
