# src/pgephemeral/cli/argparse_model.py
"""
argparse options generated from the fields of a command model.

The command models use a small set of shapes: str, int, float and Path
values, bool switches, Literal choices and repeatable list options, each
possibly wrapped in Optional. Anything else is a programming error and raises
TypeError when the parser is built. Parsed values go through
`model.model_validate(vars(namespace))`, which does the real validation.
"""
from __future__ import annotations

import argparse
import types
from pathlib import Path
from typing import Any, Dict, Literal, Type, Union, get_args, get_origin

from pydantic import BaseModel
from pydantic.fields import FieldInfo

_CONVERTERS = (str, int, float, Path)


def _unwrap_optional(ann: Any) -> Any:
    if get_origin(ann) in (Union, types.UnionType):
        members = [a for a in get_args(ann) if a is not type(None)]
        if len(members) == 1:
            return members[0]
    return ann


def _value_kwargs(ann: Any, name: str) -> Dict[str, Any]:
    if get_origin(ann) is Literal:
        return {"choices": list(get_args(ann))}
    if ann in _CONVERTERS:
        return {"type": ann}
    raise TypeError(f"option {name!r}: unsupported type {ann!r}")


def option_kwargs(name: str, field: FieldInfo) -> Dict[str, Any]:
    """`add_argument` keyword arguments for one model field."""
    ann = _unwrap_optional(field.annotation)
    kwargs: Dict[str, Any] = {"dest": name, "help": field.description or ""}

    if ann is bool:
        # --flag / --no-flag
        kwargs["action"] = argparse.BooleanOptionalAction
        kwargs["default"] = bool(field.get_default(call_default_factory=True))
        return kwargs

    required = field.is_required()
    kwargs["required"] = required
    kwargs["default"] = None if required else field.get_default(call_default_factory=True)

    if get_origin(ann) is list:
        # Repeatable: --opt a --opt b, or --opt a b.
        (elem,) = get_args(ann) or (str,)
        kwargs.update(action="extend", nargs="+", **_value_kwargs(elem, name))
        return kwargs

    kwargs.update(_value_kwargs(ann, name))
    return kwargs


def add_model_to_parser(parser: argparse.ArgumentParser, model: Type[BaseModel]) -> None:
    """Add one `--kebab-case` option per field of `model`."""
    for name, field in model.model_fields.items():
        parser.add_argument(f"--{name.replace('_', '-')}", **option_kwargs(name, field))
