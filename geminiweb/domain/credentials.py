"""Browser session cookies used to authenticate against the web service."""

from dataclasses import dataclass
from typing import Dict

PRIMARY_COOKIE = "__Secure-1PSID"
SECONDARY_COOKIE = "__Secure-1PSIDTS"
TERNARY_COOKIE = "__Secure-1PSIDCC"


@dataclass(frozen=True)
class CookieSet:
    """The three cookie values; only ``primary`` is mandatory."""
    primary: str
    secondary: str = ""
    ternary: str = ""

    def as_header(self) -> str:
        return "; ".join(f"{name}={value}" for name, value in self.as_dict().items())

    def as_dict(self) -> Dict[str, str]:
        cookies = {PRIMARY_COOKIE: self.primary}
        if self.secondary:
            cookies[SECONDARY_COOKIE] = self.secondary
        if self.ternary:
            cookies[TERNARY_COOKIE] = self.ternary
        return cookies
