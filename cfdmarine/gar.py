"""GAR (Green-Amber-Red) risk assessment records.

The command decision comes from a 3x3 matrix of overall risk against
overall gain. Records are normalized here before they reach the database.
"""

import json
import secrets
import string
from dataclasses import dataclass, field
from datetime import UTC, datetime

LEVELS = ("Low", "Medium", "High")

# (risk, gain) -> (color, decision)
DECISION_MATRIX = {
    ("Low", "High"): ("green", "Accept Mission"),
    ("Low", "Medium"): ("green", "Accept Mission"),
    ("Low", "Low"): ("green", "Accept Mission"),
    ("Medium", "High"): ("yellow", "Accept – Monitor"),
    ("Medium", "Medium"): ("yellow", "Accept – Monitor"),
    ("Medium", "Low"): ("yellow", "Accept w/ Cmd Endorsement"),
    ("High", "High"): ("red", "Cmd Endorsement Only"),
    ("High", "Medium"): ("red", "Cmd Endorsement Only"),
    ("High", "Low"): ("red", "Do Not Accept"),
}

UNDECIDED = ("", "—")

_ID_ALPHABET = string.ascii_lowercase + string.digits


class GarValidationError(ValueError):
    """Raised when a submitted GAR record is incomplete."""

    pass


def decision_from_matrix(risk: str | None, gain: str | None) -> tuple[str, str]:
    """Look up (color, decision) for an overall risk and gain level."""
    return DECISION_MATRIX.get((risk or "", gain or ""), UNDECIDED)


def generate_id(prefix: str = "GAR") -> str:
    """Return a record id like GAR-k3x9a0qz."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(8))
    return f"{prefix}-{suffix}"


def clean(value: object, fallback: str = "") -> str:
    """Flatten a submitted value to stored text.

    Lists and dicts are stored as JSON (empty ones become the fallback);
    everything else is stripped text.
    """
    if value is None:
        return fallback
    if isinstance(value, (list, dict)):
        return json.dumps(value) if value else fallback
    return str(value).strip() or fallback


def crew_list(value: object) -> list:
    """Crew is always stored as a JSON list; a single name becomes a one-item list."""
    if isinstance(value, list):
        return value
    if isinstance(value, str) and value.strip():
        return [value.strip()]
    return []


def load_json_list(raw: str | None) -> list:
    """Load a stored crew value; legacy plain-text values become a one-item list."""
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except ValueError:
        return [str(raw)]
    return value if isinstance(value, list) else []


def load_json_object(raw: str | None) -> dict:
    """Load stored risk elements, falling back to an empty dict."""
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}


@dataclass(frozen=True)
class GarRecord:
    """One submitted risk assessment."""

    id: str
    name: str
    boat: str
    date: str = ""
    time: str = ""
    shift: str = ""
    location: str = ""
    crew: list = field(default_factory=list)
    overall_risk: str = ""
    overall_gain: str = ""
    command_decision: str = ""
    color: str = ""
    risk_elements: dict = field(default_factory=dict)
    submitted_at: str = ""

    def to_dict(self) -> dict:
        """JSON shape returned by the GAR function."""
        return {
            "id": self.id,
            "name": self.name,
            "boat": self.boat,
            "date": self.date,
            "time": self.time,
            "shift": self.shift,
            "location": self.location,
            "crew": self.crew,
            "overallRisk": self.overall_risk,
            "overallGain": self.overall_gain,
            "commandDecision": self.command_decision,
            "color": self.color,
            "riskElements": self.risk_elements,
            "submittedAt": self.submitted_at,
        }


def record_from_submission(body: dict) -> GarRecord:
    """Build a new record from a submitted form.

    The decision and color are derived from the matrix when the form did
    not send them.

    Raises:
        GarValidationError: If name or boat is missing.
    """
    name = clean(body.get("name"))
    boat = clean(body.get("boat"))
    if not name or not boat:
        raise GarValidationError("missing name or boat")

    overall_risk = clean(body.get("overallRisk"))
    overall_gain = clean(body.get("overallGain"))
    color, decision = decision_from_matrix(overall_risk, overall_gain)

    risk_elements = body.get("riskElements")
    return GarRecord(
        id=generate_id(),
        name=name,
        boat=boat,
        date=clean(body.get("date")),
        time=clean(body.get("time")),
        shift=clean(body.get("shift")),
        location=clean(body.get("location")),
        crew=crew_list(body.get("crew")),
        overall_risk=overall_risk,
        overall_gain=overall_gain,
        command_decision=clean(body.get("commandDecision")) or (decision if color else ""),
        color=clean(body.get("color")) or color,
        risk_elements=risk_elements if isinstance(risk_elements, dict) else {},
        submitted_at=datetime.now(UTC).isoformat(),
    )


def update_fields(body: dict) -> dict[str, str]:
    """Admin-editable fields of an existing record, keyed by column name."""
    return {
        "location": clean(body.get("location")),
        "overall_risk": clean(body.get("overallRisk")),
        "overall_gain": clean(body.get("overallGain")),
        "command_decision": clean(body.get("commandDecision")),
        "color": clean(body.get("color")),
    }
