"""Demo case documents for each document kind."""
from typing import Any, Dict, List, Tuple

from core.applier import normalize_document
from core.models import CaseDocument, empty_document

DEMO_TITLES: Dict[str, str] = {
    "risk_assessment": "Replace hydraulic hose on forklift",
    "jha": "Confined space inspection",
    "incident": "Near miss with pallet jack",
}


def _steps(rows: List[Tuple[str, List[str], List[str], Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "id": f"step-{position + 1}",
            "order_index": position,
            "activity": activity,
            "description": description,
            "equipment": equipment,
            "substances": substances,
            "notes": [],
        }
        for position, (activity, equipment, substances, description) in enumerate(rows)
    ]


def _risk_assessment(document: CaseDocument) -> None:
    document["phase"] = "CONTROL_DISCUSSION"
    document["steps"] = _steps([
        ("Lockout forklift and chock wheels", ["Lockout kit", "Wheel chocks"], [], "Isolate power and prevent movement."),
        ("Drain hydraulic line and remove hose", ["Wrenches", "Drain pan"], ["Hydraulic oil"], "Capture fluid and prevent spills."),
        ("Install new hose and pressure test", ["Torque wrench", "Pressure gauge"], ["Hydraulic oil"], "Reconnect and verify the system holds pressure."),
    ])
    hazards = [
        ("Unexpected movement", "Forklift shifts while technician is working.", "MECHANICAL", ["Lockout/tagout", "Wheel chocks"]),
        ("Hydraulic spill", "Oil leaks create slip and skin-contact risk.", "CHEMICAL", ["Drain pan", "Spill kit"]),
        ("High-pressure leak", "Hose failure during testing can spray fluid.", "PRESSURE", ["Stand clear during test"]),
    ]
    proposed = [
        ("Add lockout verification checklist before maintenance.", "ORGANIZATIONAL"),
        ("Place absorbent mats under the hydraulic line.", "TECHNICAL"),
        ("Install a guarded pressure gauge for testing.", "TECHNICAL"),
    ]
    for position, (label, description, category, existing) in enumerate(hazards):
        hazard_id = f"hazard-{position + 1}"
        document["hazards"].append({
            "id": hazard_id,
            "order_index": position,
            "step_ids": [f"step-{position + 1}"],
            "label": label,
            "description": description,
            "category_code": category,
            "notes": [],
        })
        controls = [(text, "existing", None) for text in existing] + [(proposed[position][0], "proposed", proposed[position][1])]
        for control_position, (text, control_type, hierarchy) in enumerate(controls):
            document["controls"].append({
                "id": f"control-{position + 1}-{control_position + 1}",
                "order_index": control_position,
                "hazard_id": hazard_id,
                "description": text,
                "type": control_type,
                "hierarchy": hierarchy,
                "notes": [],
            })
    document["actions"].append({
        "id": "action-1",
        "order_index": 0,
        "hazard_id": "hazard-1",
        "description": "Print lockout verification checklist for the maintenance bay.",
        "owner": "Maintenance lead",
        "due_date": None,
        "status": "OPEN",
        "notes": [],
    })


def _jha(document: CaseDocument) -> None:
    document["phase"] = "review"
    document["steps"] = _steps([
        ("Isolate and ventilate the space", [], [], None),
        ("Test atmosphere and enter", [], [], None),
        ("Inspect equipment and document findings", [], [], None),
        ("Exit, remove lockout, and restore area", [], [], None),
    ])
    rows = [
        ("Oxygen deficiency", "Loss of consciousness or asphyxiation", ["Ventilate before entry", "Confined space permit", "Continuous gas monitor"]),
        ("Slip and trip hazards", "Falls or sprains", ["Clear debris", "Non-slip boots", "Maintain three-point contact"]),
        ("Electrical contact", "Electric shock or burns", ["Verify lockout", "Use insulated tools", "Wear rubber gloves"]),
    ]
    for position, (label, consequence, controls) in enumerate(rows):
        hazard_id = f"hazard-{position + 1}"
        document["hazards"].append({
            "id": hazard_id,
            "order_index": position,
            "step_ids": [f"step-{position + 1}"],
            "label": label,
            "description": consequence,
            "category_code": None,
            "notes": [],
        })
        for control_position, text in enumerate(controls):
            document["controls"].append({
                "id": f"control-{position + 1}-{control_position + 1}",
                "order_index": control_position,
                "hazard_id": hazard_id,
                "description": text,
                "type": "existing",
                "hierarchy": None,
                "notes": [],
            })


def _incident(document: CaseDocument) -> None:
    document["phase"] = "causes"
    document["steps"] = _steps([
        ("09:03 Pallet jack was left unattended in aisle 4.", [], [], None),
        ("09:05 Finished loading pallet and began to reverse.", [], [], None),
        ("09:06 Forklift reversed and stopped before the pallet jack.", [], [], None),
    ])
    document["hazards"].append({
        "id": "hazard-1",
        "order_index": 0,
        "step_ids": ["step-1", "step-3"],
        "label": "Housekeeping checks were skipped at shift handover.",
        "description": "Expected aisle clear before reversing; pallet jack left in path.",
        "category_code": None,
        "notes": [],
    })
    document["actions"].append({
        "id": "action-1",
        "order_index": 0,
        "hazard_id": "hazard-1",
        "description": "Reinforce aisle check checklist at every shift change.",
        "owner": "Warehouse supervisor",
        "due_date": None,
        "status": "OPEN",
        "notes": [],
    })


_BUILDERS = {
    "risk_assessment": _risk_assessment,
    "jha": _jha,
    "incident": _incident,
}


def build_demo_document(kind: str, case_id: str = "demo") -> CaseDocument:
    """Build a populated demo document of the given kind."""
    if kind not in _BUILDERS:
        raise ValueError(f"No demo available for kind '{kind}'")
    document = empty_document(case_id, kind, DEMO_TITLES[kind])
    _BUILDERS[kind](document)
    return normalize_document(document)
