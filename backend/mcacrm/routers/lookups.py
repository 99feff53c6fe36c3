"""Static option lists for frontend dropdowns."""
from fastapi import APIRouter

from mcacrm.services.lead_service import LeadState

router = APIRouter(prefix="/api/lookups", tags=["Lookups"])

# ============================================================================
# DATA
# ============================================================================

US_STATES = [
    ("AL", "Alabama"), ("AK", "Alaska"), ("AZ", "Arizona"), ("AR", "Arkansas"),
    ("CA", "California"), ("CO", "Colorado"), ("CT", "Connecticut"), ("DE", "Delaware"),
    ("FL", "Florida"), ("GA", "Georgia"), ("HI", "Hawaii"), ("ID", "Idaho"),
    ("IL", "Illinois"), ("IN", "Indiana"), ("IA", "Iowa"), ("KS", "Kansas"),
    ("KY", "Kentucky"), ("LA", "Louisiana"), ("ME", "Maine"), ("MD", "Maryland"),
    ("MA", "Massachusetts"), ("MI", "Michigan"), ("MN", "Minnesota"), ("MS", "Mississippi"),
    ("MO", "Missouri"), ("MT", "Montana"), ("NE", "Nebraska"), ("NV", "Nevada"),
    ("NH", "New Hampshire"), ("NJ", "New Jersey"), ("NM", "New Mexico"), ("NY", "New York"),
    ("NC", "North Carolina"), ("ND", "North Dakota"), ("OH", "Ohio"), ("OK", "Oklahoma"),
    ("OR", "Oregon"), ("PA", "Pennsylvania"), ("RI", "Rhode Island"), ("SC", "South Carolina"),
    ("SD", "South Dakota"), ("TN", "Tennessee"), ("TX", "Texas"), ("UT", "Utah"),
    ("VT", "Vermont"), ("VA", "Virginia"), ("WA", "Washington"), ("WV", "West Virginia"),
    ("WI", "Wisconsin"), ("WY", "Wyoming"),
]

INDUSTRIES = [
    "Retail", "Restaurant", "Construction", "Healthcare", "Professional Services",
    "Manufacturing", "Transportation", "Real Estate", "Technology", "Wholesale",
    "Agriculture", "Education", "Entertainment", "Hospitality", "Financial Services",
    "Legal Services", "Marketing/Advertising", "Auto Services", "Beauty/Salon",
    "Fitness", "E-commerce", "Consulting", "Other",
]

# conversations.priority is an integer; higher sorts first
PRIORITIES = [(0, "Low"), (1, "Medium"), (2, "High"), (3, "Urgent")]

STATE_LABELS = {LeadState.DEAD: "Dead/Cold", LeadState.FCS_RUNNING: "FCS Running"}

CONVERSATION_STEPS = [
    ("initial_contact", "Initial Contact"),
    ("qualifying", "Qualifying"),
    ("gathering_docs", "Gathering Documents"),
    ("fcs_analysis", "FCS Analysis"),
    ("fcs_completed", "FCS Completed"),
    ("lender_matching", "Lender Matching"),
    ("lender_qualification_completed", "Lender Qualification Completed"),
    ("presenting_offer", "Presenting Offer"),
    ("application_submitted", "Application Submitted"),
    ("awaiting_approval", "Awaiting Approval"),
    ("approved", "Approved"),
    ("funded", "Funded"),
    ("marked_dead", "Marked Dead"),
]

DOCUMENT_TYPES = [
    ("bank_statement", "Bank Statement"),
    ("tax_return", "Tax Return"),
    ("drivers_license", "Driver's License"),
    ("voided_check", "Voided Check"),
    ("business_license", "Business License"),
    ("credit_report", "Credit Report"),
    ("financial_statement", "Financial Statement"),
    ("other", "Other"),
]

MESSAGE_TYPES = [
    ("sms", "SMS"),
    ("email", "Email"),
    ("internal_note", "Internal Note"),
    ("system", "System"),
]

LENDER_TIERS = [(tier, f"Tier {tier}") for tier in ("A", "B", "C", "D")]


def _options(pairs):
    return [{"value": value, "label": label} for value, label in pairs]


def states():
    return [{"code": code, "name": name} for code, name in US_STATES]


def all_lookups():
    return {
        "states": states(),
        "industries": list(INDUSTRIES),
        "priorities": _options(PRIORITIES),
        "conversation_states": [
            {"value": state.value, "label": STATE_LABELS.get(state, state.value.replace("_", " ").title())}
            for state in LeadState
        ],
        "conversation_steps": _options(CONVERSATION_STEPS),
        "document_types": _options(DOCUMENT_TYPES),
        "message_types": _options(MESSAGE_TYPES),
        "lender_tiers": _options(LENDER_TIERS),
    }

# ============================================================================
# ROUTES
# ============================================================================

@router.get("")
async def get_lookups():
    return {"success": True, "lookups": all_lookups()}


@router.get("/states")
async def get_states():
    return {"success": True, "states": states()}


@router.get("/industries")
async def get_industries():
    return {"success": True, "industries": list(INDUSTRIES)}
