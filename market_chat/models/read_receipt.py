from datetime import datetime
from typing import Literal, TypedDict


ReceiptStatus = Literal["read"]


class ReadReceiptDocument(TypedDict, total=False):
    _id: str
    message_id: str
    conversation_id: str
    user_id: str
    status: ReceiptStatus
    read_at: datetime
