"""
Default stage catalog — 12 stages from lead to handover.

Used by ``seed_default_stages(tenant_id)`` to bootstrap a tenant that has no
configuration yet. Never read at request time; after seeding, the tenant's
own rows are authoritative.

Keys are local to this file: ``skip_if`` and transition ``question`` refer
to question keys, transition ``to`` refers to stage keys. A ``skip_if``
clause is ``(question_key, operator, value)``; the question is skipped when
every clause holds.
"""

# ═══════════════════════════════════════════════════════════════════════════
# SALES  (maps_to_status = planning)
# ═══════════════════════════════════════════════════════════════════════════

_LEAD = {
    "key": "lead",
    "stage": {
        "name": "1/12 Lead Qualification", "color": "#C7D2FE", "sequence_order": 1,
        "description": "Initial assessment of lead viability and requirements",
        "maps_to_status": "planning", "stage_type": "standard",
        "min_duration_hours": 1, "max_duration_hours": 168,
    },
    "questions": [
        {"key": "lead_qualified", "question_text": "Have you qualified this lead as a viable opportunity?",
         "response_type": "yes_no", "sequence_order": 1,
         "help_text": "Consider budget, timeline, and project scope"},
        {"key": "lead_value", "question_text": "What is the estimated project value?",
         "response_type": "number", "sequence_order": 2, "is_required": False,
         "help_text": "Enter rough estimate in dollars"},
        {"key": "lead_start", "question_text": "When does the client want to start?",
         "response_type": "date", "sequence_order": 3, "is_required": False,
         "help_text": "Ideal project start date"},
    ],
    "transitions": [
        {"to": "meeting", "trigger": "Yes", "question": "lead_qualified"},
        {"to": "handover", "trigger": "No", "question": "lead_qualified",
         "conditions": {"action": "close_as_unqualified"}, "is_automatic": False},
    ],
}

_MEETING = {
    "key": "meeting",
    "stage": {
        "name": "2/12 Initial Client Meeting", "color": "#A5B4FC", "sequence_order": 2,
        "description": "First meeting with client to understand project scope",
        "maps_to_status": "planning", "stage_type": "milestone",
        "min_duration_hours": 2, "max_duration_hours": 72,
    },
    "questions": [
        {"key": "meeting_held", "question_text": "Have you had your initial meeting with the client?",
         "response_type": "yes_no", "sequence_order": 1,
         "help_text": "Face-to-face or video meeting to discuss project"},
        {"key": "site_meeting", "question_text": "When is the site meeting scheduled?",
         "response_type": "date", "sequence_order": 2,
         "help_text": "Schedule on-site assessment",
         "skip_if": [("meeting_held", "eq", "Yes")]},
        {"key": "meeting_notes", "question_text": "Upload meeting notes or photos",
         "response_type": "file_upload", "sequence_order": 3, "is_required": False,
         "help_text": "Document important details from the meeting"},
    ],
    "transitions": [
        {"to": "quote_prep", "trigger": "Yes", "question": "meeting_held"},
    ],
}

_QUOTE_PREP = {
    "key": "quote_prep",
    "stage": {
        "name": "3/12 Quote Preparation", "color": "#93C5FD", "sequence_order": 3,
        "description": "Prepare detailed project quote and estimates",
        "maps_to_status": "planning", "stage_type": "standard",
        "min_duration_hours": 4, "max_duration_hours": 120,
    },
    "questions": [
        {"key": "site_assessed", "question_text": "Have you completed the site assessment?",
         "response_type": "yes_no", "sequence_order": 1,
         "help_text": "Detailed on-site evaluation for accurate quoting"},
        {"key": "costs_calculated", "question_text": "Are all materials and labor costs calculated?",
         "response_type": "yes_no", "sequence_order": 2,
         "help_text": "Ensure comprehensive cost breakdown"},
        {"key": "quote_amount", "question_text": "What is the total quote amount?",
         "response_type": "number", "sequence_order": 3, "is_required": False,
         "help_text": "Final quote amount including all costs and margin"},
    ],
    "transitions": [
        {"to": "quote_submit", "trigger": "Yes", "question": "costs_calculated"},
    ],
}

_QUOTE_SUBMIT = {
    "key": "quote_submit",
    "stage": {
        "name": "4/12 Quote Submission", "color": "#60A5FA", "sequence_order": 4,
        "description": "Submit quote to client and await response",
        "maps_to_status": "planning", "stage_type": "milestone",
        "min_duration_hours": 1, "max_duration_hours": 336,
    },
    "questions": [
        {"key": "quote_sent", "question_text": "Has the quote been submitted to the client?",
         "response_type": "yes_no", "sequence_order": 1,
         "help_text": "Quote formally sent via email or hand-delivered"},
        {"key": "response_expected", "question_text": "When do you expect a response?",
         "response_type": "date", "sequence_order": 2, "is_required": False,
         "help_text": "Client indicated decision timeline"},
        {"key": "quote_document", "question_text": "Upload quote document",
         "response_type": "file_upload", "sequence_order": 3, "is_required": False,
         "help_text": "Keep copy of submitted quote"},
    ],
    "transitions": [
        {"to": "decision", "trigger": "Yes", "question": "quote_sent"},
    ],
}

_DECISION = {
    "key": "decision",
    "stage": {
        "name": "5/12 Client Decision", "color": "#38BDF8", "sequence_order": 5,
        "description": "Client reviews and makes decision on quote",
        "maps_to_status": "planning", "stage_type": "approval",
        "min_duration_hours": 1, "max_duration_hours": 168,
    },
    "questions": [
        {"key": "quote_accepted", "question_text": "Has the client accepted the quote?",
         "response_type": "yes_no", "sequence_order": 1,
         "help_text": "Client formally agreed to proceed"},
        {"key": "requested_changes", "question_text": "Are there any requested changes?",
         "response_type": "text", "sequence_order": 2, "is_required": False,
         "help_text": "Document any scope or price modifications",
         "skip_if": [("quote_accepted", "eq", "Yes")]},
        {"key": "rejection_reason", "question_text": "What is the reason for rejection?",
         "response_type": "text", "sequence_order": 3, "is_required": False,
         "help_text": "Understand why quote was declined",
         "skip_if": [("quote_accepted", "eq", "No")]},
    ],
    "transitions": [
        {"to": "contract", "trigger": "Yes", "question": "quote_accepted"},
        {"to": "quote_prep", "trigger": "No", "question": "quote_accepted",
         "conditions": {"action": "revise_quote"}, "is_automatic": False},
    ],
}

# ═══════════════════════════════════════════════════════════════════════════
# DELIVERY  (maps_to_status = active / completed)
# ═══════════════════════════════════════════════════════════════════════════


def _gate(key, name, color, seq, description, stage_type, min_h, max_h, question, help_text, to,
          status="active"):
    """A delivery stage closed by a single yes/no gate question."""
    return {
        "key": key,
        "stage": {
            "name": name, "color": color, "sequence_order": seq,
            "description": description,
            "maps_to_status": status, "stage_type": stage_type,
            "min_duration_hours": min_h, "max_duration_hours": max_h,
        },
        "questions": [
            {"key": f"{key}_done", "question_text": question,
             "response_type": "yes_no", "sequence_order": 1, "help_text": help_text},
        ],
        "transitions": [{"to": to, "trigger": "Yes", "question": f"{key}_done"}] if to else [],
    }


_DELIVERY = [
    _gate("contract", "6/12 Contract & Deposit", "#34D399", 6,
          "Finalize contract terms and collect deposit", "milestone", 2, 72,
          "Has the contract been signed and the deposit received?",
          "Signed contract on file and deposit cleared", "procurement"),
    _gate("procurement", "7/12 Planning & Procurement", "#4ADE80", 7,
          "Detailed planning and material procurement", "standard", 8, 168,
          "Are materials ordered and the schedule confirmed?",
          "Purchase orders placed, crews booked", "onsite"),
    _gate("onsite", "8/12 On-Site Preparation", "#FACC15", 8,
          "Site preparation and setup for construction", "standard", 4, 72,
          "Is the site prepared for construction?",
          "Access, permits and site setup complete", "construction"),
    _gate("construction", "9/12 Construction Execution", "#FB923C", 9,
          "Main construction and building phase", "standard", 40, 2000,
          "Is the main construction work complete?",
          "All scoped building work finished", "inspections"),
    _gate("inspections", "10/12 Inspections & Progress Payments", "#F87171", 10,
          "Quality inspections and progress billing", "milestone", 2, 48,
          "Have inspections passed and progress payments been received?",
          "Inspection certificates and payment receipts", "finalisation"),
    _gate("finalisation", "11/12 Finalisation", "#F472B6", 11,
          "Final touches and completion preparations", "standard", 8, 120,
          "Is the punch list complete?",
          "All defects and final touches resolved", "handover"),
    _gate("handover", "12/12 Handover & Close", "#D1D5DB", 12,
          "Final handover and project closure", "milestone", 1, 24,
          "Has the project been handed over to the client?",
          "Keys, documentation and warranties delivered", None, status="completed"),
]

DEFAULT_STAGES = [_LEAD, _MEETING, _QUOTE_PREP, _QUOTE_SUBMIT, _DECISION, *_DELIVERY]
