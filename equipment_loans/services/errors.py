from __future__ import annotations


class LoanDeskError(RuntimeError):
    status_code = 400


class NotFoundError(LoanDeskError):
    status_code = 404

    def __init__(self, entity: str, identifier) -> None:
        super().__init__(f"{entity} {identifier} not found.")
        self.entity = entity
        self.identifier = identifier


class AlreadyReturnedError(LoanDeskError):
    status_code = 409

    def __init__(self, loan_id: int) -> None:
        super().__init__(f"Loan {loan_id} has already been returned.")
        self.loan_id = loan_id


class InvalidTransitionError(LoanDeskError):
    status_code = 400


class InvalidReportError(LoanDeskError):
    status_code = 400
