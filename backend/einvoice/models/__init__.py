# Models module
from einvoice.models.submission import (
    SubmissionRecord,
    SubmissionStatus,
    TERMINAL_STATUSES,
    IN_FLIGHT_STATUSES,
)
