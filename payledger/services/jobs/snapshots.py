"""Versioned schemas for the JSON snapshots stored on jobs.

`calculation_version` on a job selects the schema its snapshot was written with,
so historical jobs stay decodable after calculation logic changes.
"""

from typing import Literal

from pydantic import BaseModel


class AdjustmentLineV1(BaseModel):
    adjustment_id: str
    name: str
    adjustment_type: Literal["addition", "deduction"]
    amount_cents: int


class PayrollCalculationSnapshotV1(BaseModel):
    schema_version: Literal[1] = 1
    gross_salary_cents: int
    paye_cents: int
    uif_cents: int
    sdl_cents: int
    total_additions_cents: int
    total_deductions_cents: int
    net_salary_cents: int
    adjustments: list[AdjustmentLineV1]
    rates: dict[str, str]
    tax_year: int


class PaymentCalculationSnapshotV1(BaseModel):
    schema_version: Literal[1] = 1
    amount_cents: int
    currency: str
    schedule_id: str | None = None


class EmployeeSnapshotV1(BaseModel):
    employee_id: str
    name: str
    gross_salary_cents: int
    uif_exempt: bool
    tax_number: str | None = None


class RecipientSnapshotV1(BaseModel):
    recipient_id: str
    name: str
    account_reference: str | None = None


CALCULATION_SCHEMAS: dict[tuple[str, int], type[BaseModel]] = {
    ("payroll", 1): PayrollCalculationSnapshotV1,
    ("payment", 1): PaymentCalculationSnapshotV1,
}


def schema_version(schema: type[BaseModel]) -> int:
    """The `calculation_version` a job gets when its snapshot is written with `schema`."""

    return schema.model_fields["schema_version"].default


def decode_calculation_snapshot(job_type: str, version: int, data: dict) -> BaseModel:
    """Parse a stored calculation snapshot with the schema for its version."""

    schema = CALCULATION_SCHEMAS.get((job_type, version))
    if schema is None:
        raise ValueError(f"no calculation snapshot schema for {job_type} v{version}")
    return schema.model_validate(data)


def decode_job_snapshot(job) -> BaseModel:
    return decode_calculation_snapshot(job.job_type, job.calculation_version, job.calculation_snapshot)
