"""Alert gate: decides whether an issue is worth notifying about."""

from src.db.models import Issue

MIN_OCCURRENCES_FOR_ALERT = 2


def issue_is_alertable(issue: Issue) -> bool:
    """
    Programmatic findings must be seen twice before alerting. An AI-confirmed
    finding is already corroborated and alerts on first sight.

    Only open issues alert; acknowledged and resolved issues never do.
    """
    if issue.status != "open":
        return False
    if issue.ai_confirmed is True:
        return True
    return issue.severity == "high" and (issue.occurrence_count or 0) >= MIN_OCCURRENCES_FOR_ALERT
