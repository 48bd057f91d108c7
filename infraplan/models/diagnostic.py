from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Severity(str, Enum):
    ERROR   = "ERROR"
    WARNING = "WARNING"
    INFO    = "INFO"


@dataclass
class Diagnostic:
    diagnostic_id: str
    check: str             # e.g. "unresolved-reference"
    severity: Severity
    address: str
    message: str
    hint: str = ""
    attribute: Optional[str] = None
    source_file: str = ""

    def to_dict(self) -> dict:
        return {
            "diagnostic_id": self.diagnostic_id,
            "check": self.check,
            "severity": self.severity.value,
            "address": self.address,
            "message": self.message,
            "hint": self.hint,
            "attribute": self.attribute,
            "source_file": self.source_file,
        }
