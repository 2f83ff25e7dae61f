"""Variable substitution for recurring post templates."""

import random
from typing import Mapping, Optional, Sequence


def render_template(
    template: str,
    variables: Mapping[str, Sequence[str]],
    rng: Optional[random.Random] = None,
) -> str:
    """
    Replace each ``{name}`` placeholder with a random candidate.

    One candidate is drawn per variable per call, so repeated placeholders
    within a template receive the same value. Variables with no
    candidates and placeholders without a variable are left untouched.

    Args:
        template: Post text containing ``{name}`` placeholders.
        variables: Candidate values per variable name.
        rng: Random source (injected for deterministic tests).

    Returns:
        The rendered text.
    """
    rng = rng or random.Random()
    rendered = template
    for name, candidates in variables.items():
        if not candidates:
            continue
        rendered = rendered.replace("{" + name + "}", str(rng.choice(list(candidates))))
    return rendered


__all__ = ["render_template"]
