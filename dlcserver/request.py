from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class ServeRequest:
    """One parsed request. Header names are lowercased."""

    method: str
    path: str                      # Percent-decoded, no query string
    headers: Dict[str, str] = field(default_factory=dict)
    url: str = ""                  # Raw request target, for logging
    client: Optional[Tuple[str, int]] = None
    keep_alive: bool = True

    @property
    def client_host(self) -> str:
        return self.client[0] if self.client else "-"
