from datetime import datetime
from typing import TypedDict


class ParticipantDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    user_id: str
    # free-form; stored and returned, never enforced
    role: str
    created_at: datetime
