"""
``${VAR}`` interpolation of stack files against host facts and tool settings.
"""
import re
from typing import Dict, List, Mapping

# ${VAR}, ${VAR:-default}, ${VAR:+alternate}; $${...} is a literal escape
_PATTERN = re.compile(r"\$(\$?)\{([A-Za-z_][A-Za-z0-9_]*)(?::(-|\+)([^}]*))?\}")


class EnvironmentInterpolator:
    """
    Utility for interpolating variables in stack file text.
    Supports ${VAR}, ${VAR:-default} and ${VAR:+value}; $${VAR} is left as ${VAR}.
    """
    @staticmethod
    def interpolate(template: str, context: Mapping[str, str]) -> str:
        """
        Interpolates variables in the template using the provided context.

        :param template: Text containing ${VAR} placeholders.
        :param context: Variable values.
        :return: The interpolated text.
        :raises KeyError: If a bare ${VAR} is not in the context.
        """
        def replace(match: "re.Match") -> str:
            escaped, name, modifier, alt_value = match.groups()
            if escaped:
                return match.group(0)[1:]

            value = context.get(name)
            if modifier == "-":
                return value if value else alt_value
            if modifier == "+":
                return alt_value if value else ""
            if value is None:
                raise KeyError(f"Variable {name} not found in context")
            return str(value)

        return _PATTERN.sub(replace, template)

    @staticmethod
    def variables(template: str) -> List[str]:
        """
        Names referenced by un-escaped placeholders, in order of appearance.
        """
        names: List[str] = []
        for escaped, name, _, _ in _PATTERN.findall(template):
            if not escaped and name not in names:
                names.append(name)
        return names


def merge_contexts(*contexts: Mapping[str, str]) -> Dict[str, str]:
    """Later contexts override earlier ones."""
    merged: Dict[str, str] = {}
    for context in contexts:
        merged.update({k: str(v) for k, v in context.items() if v is not None})
    return merged
