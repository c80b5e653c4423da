"""Process-level resource tuning for supervised nodes."""

from __future__ import annotations

import resource

STACK_SIZE_LIMIT = 67104768


def augment_stack_size_limit() -> None:
    """Raise the soft stack size limit of the current process."""
    try:
        _, hard = resource.getrlimit(resource.RLIMIT_STACK)
    except (OSError, ValueError) as err:
        raise OSError(f"getting rlimit: {err}") from err

    try:
        resource.setrlimit(resource.RLIMIT_STACK, (STACK_SIZE_LIMIT, hard))
    except (OSError, ValueError) as err:
        raise OSError(f"setting rlimit: {err}") from err