from typing import Optional

from pydantic import BaseModel


class TokenPayload(BaseModel):

    sub: str
    exp: int
    role: Optional[str] = None
