"""
Custom Exception Classes for DealFlow.

Provides standardized HTTP exceptions for the admin API and the domain
errors raised by the resilience layer.
"""
from fastapi import HTTPException, status


class NotFoundError(HTTPException):
    """Exception raised when a requested resource is not found."""

    def __init__(self, resource: str, id: str = None):
        detail = f"{resource} not found" + (f": {id}" if id else "")
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class ServiceUnavailableError(HTTPException):
    """Exception raised when the coordination store rejected an admin write."""

    def __init__(self, message: str = "Operation could not be completed. Please try again later."):
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=message)


class IllegalTransitionError(Exception):
    """Raised when a state machine is asked to make a transition it does not define."""

    def __init__(self, machine: str, current: str, event: str):
        self.machine = machine
        self.current = current
        self.event = event
        super().__init__(f"{machine}: no transition from '{current}' on '{event}'")
