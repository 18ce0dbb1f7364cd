from pathlib import Path

import yaml
from pydantic import ValidationError

from src.core.entities import EventKind
from src.rules.models import Rules


def _strip_markdown_fences(content: str) -> str:
    """Return the first ```yaml block if there is one, else the whole text."""
    yaml_lines = []
    in_block = False
    found_block = False

    for line in content.splitlines():
        s_line = line.strip()
        if s_line.startswith("```yaml"):
            in_block = True
            found_block = True
            continue
        if in_block and s_line.startswith("```"):
            break
        if in_block:
            yaml_lines.append(line)

    return "\n".join(yaml_lines) if found_block else content


def load_rules(path: Path) -> Rules:
    """
    Load and validate the rules file.
    Raises FileNotFoundError if file missing.
    Raises ValueError if YAML or schema invalid.
    """
    if not path.exists():
        raise FileNotFoundError(f"Rules file not found at: {path}")

    clean_content = _strip_markdown_fences(path.read_text())

    try:
        data = yaml.safe_load(clean_content)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML syntax in rules file: {e}") from e

    try:
        rules = Rules.model_validate(data)
    except ValidationError as e:
        # Re-raise with a clear message for the caller/logs
        raise ValueError(f"Rules validation failed:\n{e}") from e

    _check_kinds(rules)
    return rules


def _check_kinds(rules: Rules) -> None:
    """Fail fast on event kinds in rules that the core does not know."""
    known = {k.value for k in EventKind}
    named = set(rules.analytics.dedupe.window_overrides) | set(
        rules.analytics.query.ranking_weights
    )
    unknown = sorted(named - known)
    if unknown:
        raise ValueError(f"Rules validation failed: unknown event kinds {unknown}")

    query = rules.analytics.query
    if query.breakdown_limit > query.breakdown_max_limit:
        raise ValueError("Rules validation failed: breakdown_limit exceeds breakdown_max_limit")
    if query.ranking_limit > query.ranking_max_limit:
        raise ValueError("Rules validation failed: ranking_limit exceeds ranking_max_limit")
