from dealercrm.assignment.models import AssignmentCursor
from dealercrm.crm.models import BudgetTemplate, Goal, Lead, LeadHistory, LeadNote
from dealercrm.identity.models import User

__all__ = [
    "AssignmentCursor",
    "BudgetTemplate",
    "Goal",
    "Lead",
    "LeadHistory",
    "LeadNote",
    "User",
]
