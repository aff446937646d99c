"""Input validation: owner keys, component plans and reviewer feedback."""

from genflow.errors import IllegalTransition

KEY_SEPARATOR = ":"


def make_owner_key(scope: str, route: str) -> str:
    """Build the composite owner key ``<scope>:<route>``.

    Raises ValueError if either part is empty or the scope contains the separator.
    """
    if not isinstance(scope, str) or not scope.strip():
        raise ValueError("Owner key scope must be a non-empty string.")
    if KEY_SEPARATOR in scope:
        raise ValueError(f"Owner key scope must not contain '{KEY_SEPARATOR}'.")
    if not isinstance(route, str) or not route.strip():
        raise ValueError("Owner key route must be a non-empty string.")
    return f"{scope.strip()}{KEY_SEPARATOR}{route.strip()}"


def split_owner_key(owner_key: str) -> tuple[str, str]:
    """Inverse of make_owner_key. Raises ValueError on malformed keys."""
    scope, sep, route = (owner_key or "").partition(KEY_SEPARATOR)
    if not sep or not scope or not route:
        raise ValueError(f"Malformed owner key '{owner_key}'. Expected '<scope>:<route>'.")
    return scope, route


def validate_components(names) -> list[str]:
    """Validate an ordered component plan: non-empty, unique names.

    An empty plan is allowed (progress is then reported through the
    percentage only).
    """
    cleaned = []
    for name in names or []:
        if not isinstance(name, str) or not name.strip():
            raise ValueError("Component names must be non-empty strings.")
        if name.strip() in cleaned:
            raise ValueError(f"Duplicate component name '{name.strip()}'.")
        cleaned.append(name.strip())
    return cleaned


def validate_feedback(feedback: str) -> str:
    """Revision feedback must be a non-empty string.

    Returns the stripped feedback on success.
    Raises IllegalTransition if it is empty or whitespace-only.
    """
    if not isinstance(feedback, str) or not feedback.strip():
        raise IllegalTransition("Revision feedback must be a non-empty string.")
    return feedback.strip()
