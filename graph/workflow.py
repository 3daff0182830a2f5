import os
import json
from dataclasses import dataclass
from typing import Dict, Any, List, Optional
from loguru import logger

# Stage catalog location (JSON array of stage objects)
WORKFLOW_CONFIG_PATH = os.getenv("WORKFLOW_JSON", "./infra/stages.json")

SUBMITTED = "Submitted"
REJECTED = "Rejected"
ROLES = {"Agent", "Admin", "Credit", "Field", "Ops", "Finance", "System"}

DEFAULT_STAGES: List[Dict[str, Any]] = [
    {"code": "Submitted", "label": "Lead Submitted", "progress": 10, "role": "Agent", "next": "Docs_Validation"},
    {"code": "Docs_Validation", "label": "Document Verification", "progress": 20, "role": "Ops", "next": "Login", "fail": "Docs_Pending"},
    {"code": "Docs_Pending", "label": "Docs Pending (Action Req)", "progress": 15, "role": "Agent", "next": "Docs_Validation"},
    {"code": "Login", "label": "Bank Login Done", "progress": 30, "role": "Admin", "next": "Credit_Review"},
    {"code": "Credit_Review", "label": "Underwriting", "progress": 45, "role": "Credit", "next": "Sanctioned", "fail": "Rejected", "optional": "PD_Scheduled"},
    {"code": "PD_Scheduled", "label": "Field Investigation", "progress": 55, "role": "Field", "next": "Credit_Review"},
    {"code": "Sanctioned", "label": "Sanction Letter Issued", "progress": 70, "role": "Admin", "next": "Offer_Accepted"},
    {"code": "Offer_Accepted", "label": "Offer Accepted by Client", "progress": 80, "role": "Agent", "next": "Agreement_Stage"},
    {"code": "Agreement_Stage", "label": "Agreement & eNACH", "progress": 90, "role": "Ops", "next": "Disbursed"},
    {"code": "Disbursed", "label": "Funds Disbursed", "progress": 100, "role": "Finance", "is_final": True},
    {"code": "Rejected", "label": "File Closed / Rejected", "progress": 100, "role": "System", "is_final": True},
]


@dataclass(frozen=True)
class Stage:
    """A named point in the lead lifecycle."""
    code: str
    label: str
    progress: int = 0
    role: str = "System"
    next: Optional[str] = None
    fail: Optional[str] = None
    optional: Optional[str] = None
    is_final: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "label": self.label,
            "progress": self.progress,
            "role": self.role,
            "next": self.next,
            "fail": self.fail,
            "optional": self.optional,
            "is_final": self.is_final,
        }


def load_stage_catalog(path: Optional[str] = None) -> List[Dict[str, Any]]:
    """Load the stage catalog from JSON, falling back to the built-in table."""
    path = path or WORKFLOW_CONFIG_PATH
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except FileNotFoundError:
        logger.warning(f"Stage catalog not found at {path}, using defaults")
        return [dict(s) for s in DEFAULT_STAGES]
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in stage catalog {path}: {e}")

    if not isinstance(data, list):
        raise ValueError(f"Stage catalog {path} must be a JSON array")
    return data


class WorkflowGraph:
    """Static directed graph of lead stages; answers which transitions are legal."""

    def __init__(self, stages: Optional[List[Dict[str, Any]]] = None):
        if stages is None:
            stages = load_stage_catalog()

        self._stages: Dict[str, Stage] = {}
        for raw in stages:
            stage = Stage(
                code=raw["code"],
                label=raw.get("label") or raw["code"],
                progress=int(raw.get("progress", 0)),
                role=raw.get("role", "System"),
                next=raw.get("next"),
                fail=raw.get("fail"),
                optional=raw.get("optional"),
                is_final=bool(raw.get("is_final", False)),
            )
            if stage.code in self._stages:
                raise ValueError(f"Duplicate stage code: {stage.code}")
            self._stages[stage.code] = stage

        self._validate()
        logger.info(f"Workflow graph loaded with {len(self._stages)} stages")

    def _validate(self) -> None:
        for required in (SUBMITTED, REJECTED):
            if required not in self._stages:
                raise ValueError(f"Stage catalog is missing required stage {required}")
        if not self._stages[REJECTED].is_final:
            raise ValueError("Rejected must be a final stage")

        for stage in self._stages.values():
            if not 0 <= stage.progress <= 100:
                raise ValueError(f"Stage {stage.code} progress out of range: {stage.progress}")
            if stage.role not in ROLES:
                raise ValueError(f"Stage {stage.code} has unknown role {stage.role}")
            edges = [e for e in (stage.next, stage.fail, stage.optional) if e]
            for target in edges:
                if target not in self._stages:
                    raise ValueError(f"Stage {stage.code} points at unknown stage {target}")
            if stage.is_final and edges:
                raise ValueError(f"Final stage {stage.code} must not have outgoing edges")

        # Every stage must be reachable from Submitted
        seen = set()
        frontier = [SUBMITTED]
        while frontier:
            code = frontier.pop()
            if code in seen:
                continue
            seen.add(code)
            frontier.extend(s.code for s in self.next_options(code))
        unreachable = set(self._stages) - seen
        if unreachable:
            raise ValueError(f"Stages unreachable from {SUBMITTED}: {sorted(unreachable)}")

    def is_known(self, code: str) -> bool:
        return code in self._stages

    def codes(self) -> List[str]:
        return list(self._stages)

    def stages(self) -> List[Stage]:
        return list(self._stages.values())

    def get_stage(self, code: str) -> Stage:
        """
        Return the stage for `code`.

        Unknown codes (ad hoc statuses introduced by upstream sources) get a
        synthetic, non-final stage instead of an error.
        """
        stage = self._stages.get(code)
        if stage is None:
            return Stage(code=code, label=code, progress=0, is_final=False)
        return stage

    def next_options(self, code: str) -> List[Stage]:
        """Legal next stages; the first entry is the primary action."""
        current = self.get_stage(code)
        options: List[Stage] = []

        for target in (current.next, current.fail, current.optional):
            if target and all(o.code != target for o in options):
                options.append(self.get_stage(target))

        # Reject is always available unless already final
        if not current.is_final and code != REJECTED:
            if all(o.code != REJECTED for o in options):
                options.append(self._stages[REJECTED])

        return options

    def is_valid_transition(self, from_code: str, to_code: str) -> bool:
        # Unknown source stages are allowed so admins can repair inconsistent data
        if to_code == from_code or not self.is_known(from_code):
            return True
        return any(s.code == to_code for s in self.next_options(from_code))

    def progress(self, code: str) -> int:
        return self.get_stage(code).progress
