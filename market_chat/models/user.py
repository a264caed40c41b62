from typing import Optional, TypedDict


class UserDocument(TypedDict, total=False):

    _id: str
    email: str
    full_name: Optional[str]
    role: Optional[str]
