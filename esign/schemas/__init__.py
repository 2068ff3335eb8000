from esign.schemas.document import (
    RecipientResponse,
    DocumentResponse,
    DocumentListResponse,
    DocumentEventResponse,
    RecoverRequest,
)
from esign.schemas.reminder import (
    ReminderScheduleRequest,
    SendReminderRequest,
    ReminderStatusResponse,
    ReminderScheduleResponse,
    ReminderOutcomeResponse,
)
