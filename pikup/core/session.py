from dataclasses import dataclass
from typing import Literal, Optional

from pikup.core.exceptions import AuthenticationError

Role = Literal["customer", "driver"]


@dataclass
class Session:
    """Identity of the signed-in user, handed to every component that needs it."""
    uid: str
    access_token: Optional[str] = None
    email: Optional[str] = None
    role: Role = "customer"
    display_name: Optional[str] = None

    def require_token(self) -> str:
        if not self.access_token:
            raise AuthenticationError("User not authenticated")
        return self.access_token

    @property
    def name(self) -> str:
        if self.display_name:
            return self.display_name
        if self.email:
            return self.email.split("@")[0]
        return "Driver" if self.role == "driver" else "Customer"
