from gigaid.gig.models import Invoice, Job, Lead, User

__all__ = [
    "Invoice",
    "Job",
    "Lead",
    "User",
]
