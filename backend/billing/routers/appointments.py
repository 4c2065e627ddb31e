"""Scheduler hooks for appointment state changes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from .. import schemas
from ..dependencies import get_appointment_handler, run_serialized
from ..services import AppointmentEventHandler

router = APIRouter()


@router.post("/{appointment_id}/completed", response_model=schemas.SessionCompletedResponse)
def appointment_completed(
    appointment_id: str,
    handler: AppointmentEventHandler = Depends(get_appointment_handler),
) -> schemas.SessionCompletedResponse:
    """Deduct the session from the prepaid balance and invoice when needed."""

    outcome = run_serialized(
        lambda: handler.on_session_completed(appointment_id),
        action="deduct the session",
    )
    if outcome.deduction.message == "Appointment not found":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Appointment not found")
    return schemas.SessionCompletedResponse.model_validate(outcome)


@router.post("/{appointment_id}/scheduled", response_model=schemas.AppointmentScheduledResponse)
def appointment_scheduled(
    appointment_id: str,
    handler: AppointmentEventHandler = Depends(get_appointment_handler),
) -> schemas.AppointmentScheduledResponse:
    result = run_serialized(
        lambda: handler.on_appointment_scheduled(appointment_id),
        action="check the prepaid balance",
    )
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Appointment not found")
    return schemas.AppointmentScheduledResponse.model_validate(result)
