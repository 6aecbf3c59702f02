"""Template expansion for pipeline documents.

Handles the compile-time constructs of a definition:

* ``${{ expr }}`` substitution in scalar values
* conditional inclusion with ``${{ if expr }}`` / ``${{ elseif expr }}`` /
  ``${{ else }}`` keys, in lists (items are spliced) and in mappings
  (the mapping is merged)
* ``template:`` references to other YAML files with their own parameters
"""

import logging
import re
from pathlib import Path
from typing import Any, Optional

import yaml

from pipewright.core.constants import MAX_TEMPLATE_DEPTH
from pipewright.core.exceptions import ConfigurationError, TemplateError
from pipewright.definition.expressions import evaluate_condition, render_value
from pipewright.definition.snapshot import (
    RunSnapshot,
    parse_parameters,
    resolve_parameters,
)


logger = logging.getLogger(__name__)

_IF_RE = re.compile(r"^\s*\$\{\{\s*if\s+(.*?)\s*\}\}\s*$", re.DOTALL)
_ELSEIF_RE = re.compile(r"^\s*\$\{\{\s*elseif\s+(.*?)\s*\}\}\s*$", re.DOTALL)
_ELSE_RE = re.compile(r"^\s*\$\{\{\s*else\s*\}\}\s*$")

TEMPLATE_BODY_KEYS = ("steps", "jobs", "stages", "variables")


def _directive(key: Any) -> Optional[tuple[str, Optional[str]]]:
    """Classify a mapping key as an if/elseif/else directive."""
    if not isinstance(key, str) or "${{" not in key:
        return None
    match = _IF_RE.match(key)
    if match:
        return "if", match.group(1)
    match = _ELSEIF_RE.match(key)
    if match:
        return "elseif", match.group(1)
    if _ELSE_RE.match(key):
        return "else", None
    return None


def _as_items(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def load_yaml_file(path: Path) -> Any:
    """Read a YAML file.

    Raises:
        ConfigurationError: If the file is missing or not valid YAML
    """
    try:
        with path.open("r", encoding="utf-8") as f:
            return yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"File not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Failed to read {path}: {e}") from e


class TemplateExpander:
    """Expands one document (or one template file) against a snapshot.

    Example:
        >>> expander = TemplateExpander(snapshot, base_dir=Path("pipelines"))
        >>> stages = expander.expand(raw["stages"])
    """

    def __init__(
        self,
        context: RunSnapshot,
        base_dir: Path,
        *,
        root_dir: Optional[Path] = None,
        depth: int = 0,
        render: bool = True,
    ) -> None:
        """Initialize expander.

        Args:
            context: Snapshot used to evaluate expressions
            base_dir: Directory template references are resolved against
            root_dir: Directory of the top-level definition (fallback lookup)
            depth: Current template nesting depth
            render: When False only conditional structure is resolved and
                scalar ``${{ }}`` expressions are left untouched
        """
        self.context = context
        self.base_dir = base_dir
        self.root_dir = root_dir or base_dir
        self.depth = depth
        self.render = render

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    def expand(self, node: Any) -> Any:
        """Expand a YAML node recursively."""
        if isinstance(node, list):
            return self._expand_list(node)
        if isinstance(node, dict):
            return self._expand_mapping(node)
        if self.render:
            return render_value(node, self.context)
        return node

    def _expand_list(self, items: list[Any]) -> list[Any]:
        result: list[Any] = []
        # Whether the current if/elseif chain already took a branch; None
        # outside of a chain
        chain_taken: Optional[bool] = None

        for item in items:
            if isinstance(item, dict) and len(item) == 1:
                key, value = next(iter(item.items()))
                directive = _directive(key)
                if directive is not None:
                    chain_taken = self._apply_list_directive(
                        directive, value, chain_taken, result
                    )
                    continue

            chain_taken = None
            if isinstance(item, dict) and "template" in item:
                result.extend(self.include(item))
            else:
                result.append(self.expand(item))

        return result

    def _apply_list_directive(
        self,
        directive: tuple[str, Optional[str]],
        value: Any,
        chain_taken: Optional[bool],
        result: list[Any],
    ) -> Optional[bool]:
        kind, expression = directive
        if kind != "if" and chain_taken is None:
            raise TemplateError(f"'${{{{ {kind} }}}}' without a preceding '${{{{ if }}}}'")

        if kind == "if":
            take = evaluate_condition(expression, self.context)
        elif chain_taken:
            take = False
        else:
            take = kind == "else" or evaluate_condition(expression, self.context)

        if take:
            result.extend(self._expand_list(_as_items(value)))

        if kind == "else":
            return None
        if kind == "if":
            return take
        return bool(chain_taken) or take

    def _expand_mapping(self, mapping: dict[Any, Any]) -> dict[Any, Any]:
        result: dict[Any, Any] = {}
        chain_taken: Optional[bool] = None

        for key, value in mapping.items():
            directive = _directive(key)
            if directive is None:
                chain_taken = None
                expanded_key = render_value(key, self.context) if self.render else key
                result[expanded_key] = self.expand(value)
                continue

            kind, expression = directive
            if kind != "if" and chain_taken is None:
                raise TemplateError(f"'${{{{ {kind} }}}}' without a preceding '${{{{ if }}}}'")

            if kind == "if":
                take = evaluate_condition(expression, self.context)
            elif chain_taken:
                take = False
            else:
                take = kind == "else" or evaluate_condition(expression, self.context)

            if take:
                if value is None:
                    pass
                elif not isinstance(value, dict):
                    raise TemplateError(
                        f"Conditional key {key!r} in a mapping must hold a mapping"
                    )
                else:
                    result.update(self._expand_mapping(value))

            if kind == "else":
                chain_taken = None
            elif kind == "if":
                chain_taken = take
            else:
                chain_taken = bool(chain_taken) or take

        return result

    # ------------------------------------------------------------------
    # Template files
    # ------------------------------------------------------------------

    def resolve_path(self, reference: str) -> Path:
        """Resolve a template reference relative to the including file."""
        reference = reference.split("@", 1)[0].strip()
        for base in (self.base_dir, self.root_dir):
            candidate = (base / reference).resolve()
            if candidate.is_file():
                return candidate
        raise TemplateError(f"Template not found: {reference} (searched {self.base_dir})")

    def include(self, item: dict[str, Any]) -> list[Any]:
        """Expand a ``template:`` list item into the items it contributes.

        Raises:
            TemplateError: On a missing template, bad parameters or excessive nesting
        """
        reference = item["template"]
        if not isinstance(reference, str):
            raise TemplateError(f"Template reference must be a string, got {reference!r}")

        if self.depth >= MAX_TEMPLATE_DEPTH:
            raise TemplateError(
                f"Template nesting deeper than {MAX_TEMPLATE_DEPTH} levels at {reference}"
            )

        path = self.resolve_path(reference)
        document = load_yaml_file(path) or {}
        if not isinstance(document, dict):
            raise TemplateError(f"Template {path} must be a mapping")

        raw_args = item.get("parameters") or {}
        if not isinstance(raw_args, dict):
            raise TemplateError(f"Parameters for template {reference} must be a mapping")
        args = {name: self.expand(value) for name, value in raw_args.items()}

        declared = parse_parameters(document.get("parameters"), source=str(path))
        try:
            values = resolve_parameters(declared, args, source=f"template {reference}")
        except TemplateError:
            raise
        except ConfigurationError as e:
            raise TemplateError(str(e)) from e

        logger.debug(f"Expanding template {path} (depth {self.depth + 1})")
        child = TemplateExpander(
            self.context.with_parameters(values),
            base_dir=path.parent,
            root_dir=self.root_dir,
            depth=self.depth + 1,
            render=self.render,
        )

        for body_key in TEMPLATE_BODY_KEYS:
            if body_key in document:
                return child.expand(_as_items(document[body_key]))
        raise TemplateError(
            f"Template {path} has no body (expected one of: {', '.join(TEMPLATE_BODY_KEYS)})"
        )
