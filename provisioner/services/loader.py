"""
Declaration file loading.

Accepts YAML or JSON (JSON is valid YAML). The document is either a bare
mapping of declaration id -> {type, attributes, references, immutable}, or a
stack document with `project`, `env`, `region` and a `declarations` mapping.
"""

from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError as PydanticValidationError

from provisioner.models import Stack
from .errors import ValidationError

STACK_KEYS = {"project", "env", "region", "declarations"}


def parse_stack(document: Any, project: Optional[str] = None, env: Optional[str] = None) -> Stack:
    if document is None:
        document = {}
    if not isinstance(document, dict):
        raise ValidationError(["Declaration file must contain a mapping at the top level"])

    if "declarations" in document:
        extra = sorted(set(document) - STACK_KEYS)
        if extra:
            raise ValidationError([f"Unknown top-level key(s): {', '.join(extra)}"])
        data: Dict[str, Any] = dict(document)
    else:
        data = {"declarations": document}

    if project:
        data["project"] = project
    if env:
        data["env"] = env

    try:
        return Stack(**data)
    except PydanticValidationError as e:
        raise ValidationError([
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ])


def load_stack(path: str, project: Optional[str] = None, env: Optional[str] = None) -> Stack:
    p = Path(path)
    try:
        with open(p, "r", encoding="utf-8") as f:
            document = yaml.safe_load(f)
    except OSError as e:
        raise ValidationError([f"Cannot read declaration file {p}: {e.strerror}"])
    except yaml.YAMLError as e:
        raise ValidationError([f"Cannot parse declaration file {p}: {e}"])
    return parse_stack(document, project, env)
