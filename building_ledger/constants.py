APARTMENT_STATUSES = ("occupied", "vacant")

RECURRING_TYPES = ("monthly", "yearly")

COLLECTION_ACTION_TYPES = ("email_reminder", "formal_notice", "final_warning", "custom")

LEDGER_ENTRY_TYPES = ("debit", "credit")
LEDGER_REFERENCE_TYPES = ("payment", "expense", "subscription", "reversal", "waiver")

OBLIGATION_EXPENSE = "expense"
OBLIGATION_SUBSCRIPTION = "subscription"
OBLIGATION_SUBSCRIPTION_DUE = "subscription-due"

DEFAULT_COLLECTION_STAGES = [
    {
        "stage_number": 1,
        "name": "Friendly reminder",
        "days_overdue": 7,
        "action_type": "email_reminder",
    },
    {
        "stage_number": 2,
        "name": "Formal notice",
        "days_overdue": 30,
        "action_type": "formal_notice",
    },
    {
        "stage_number": 3,
        "name": "Final warning",
        "days_overdue": 60,
        "action_type": "final_warning",
    },
]

# Fallback subjects/bodies used when a stage has no template attached.
DEFAULT_STAGE_TEMPLATES = {
    "email_reminder": {
        "subject": "Payment reminder for apartment {{apartment_number}}",
        "body": (
            "Hello,\n\n"
            "Our records show an outstanding balance of {{balance}} for apartment "
            "{{apartment_number}} in {{building_name}}.\n"
            "Please settle it at your earliest convenience.\n\n"
            "Thank you,\nBuilding Management"
        ),
    },
    "formal_notice": {
        "subject": "Formal notice: overdue balance for apartment {{apartment_number}}",
        "body": (
            "Hello,\n\n"
            "The balance of {{balance}} for apartment {{apartment_number}} has been overdue "
            "for {{days_overdue}} days. This is a formal notice to pay the outstanding amount.\n\n"
            "Building Management"
        ),
    },
    "final_warning": {
        "subject": "Final warning for apartment {{apartment_number}}",
        "body": (
            "Hello,\n\n"
            "Despite previous notices, {{balance}} remains unpaid for apartment "
            "{{apartment_number}} ({{days_overdue}} days overdue). Further action will be "
            "taken if the balance is not settled.\n\n"
            "Building Management"
        ),
    },
    "custom": {
        "subject": "{{stage_name}}: apartment {{apartment_number}}",
        "body": (
            "Hello,\n\n"
            "Apartment {{apartment_number}} has an outstanding balance of {{balance}}.\n\n"
            "Building Management"
        ),
    },
}
