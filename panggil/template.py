"""Request body template synthesis.

Builds a JSON scaffold with exactly one entry per field of a method's input
message, merged with whatever the user already typed. Edits are preserved
at every nesting depth; anything missing is filled with a default for the
field's kind. Synthesis never fails: text that is not a JSON object is
treated as an empty object.

Each field is classified once into a closed set of shapes (see FieldKind)
and the merge dispatches on that shape:

    existing value, singular message, value is an object -> recurse
    existing value, anything else                        -> keep verbatim
    no existing value                                    -> default for kind

Recursive schemas are cut with a path guard: when a message type is
entered again below itself, an existing value is kept verbatim and a
missing one becomes an empty placeholder object.
"""

import copy
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Union

from google.protobuf.descriptor import Descriptor, FieldDescriptor


class FieldKind(str, Enum):
    """Shape of a field for template purposes."""
    SCALAR = "scalar"
    MESSAGE = "message"
    REPEATED = "repeated"
    MAP = "map"


@dataclass(frozen=True)
class FieldShape:
    """Classification of one field.

    Attributes:
        json_name: Key used for the field in JSON.
        kind: Template shape of the field.
        message: Message schema for singular message fields.
        zero: Default value for scalar and enum fields.
    """
    json_name: str
    kind: FieldKind
    message: Optional[Descriptor] = None
    zero: Any = None


_TEXT_TYPES = (FieldDescriptor.TYPE_STRING, FieldDescriptor.TYPE_BYTES)
_MESSAGE_TYPES = (FieldDescriptor.TYPE_MESSAGE, FieldDescriptor.TYPE_GROUP)


def _zero_value(field: FieldDescriptor) -> Any:
    if field.type in _TEXT_TYPES:
        return ""
    if field.type == FieldDescriptor.TYPE_BOOL:
        return False
    # Every numeric kind and enums.
    return 0


def _is_map(field: FieldDescriptor) -> bool:
    message = field.message_type
    return message is not None and message.GetOptions().map_entry


def classify_field(field: FieldDescriptor) -> FieldShape:
    """Classify a field descriptor into its template shape."""
    if field.label == FieldDescriptor.LABEL_REPEATED:
        kind = FieldKind.MAP if _is_map(field) else FieldKind.REPEATED
        return FieldShape(json_name=field.json_name, kind=kind)

    if field.type in _MESSAGE_TYPES:
        return FieldShape(
            json_name=field.json_name,
            kind=FieldKind.MESSAGE,
            message=field.message_type,
        )

    return FieldShape(
        json_name=field.json_name,
        kind=FieldKind.SCALAR,
        zero=_zero_value(field),
    )


def parse_object(text: Optional[str]) -> Dict[str, Any]:
    """Parse text as a JSON object, returning {} for anything else."""
    if not text:
        return {}
    try:
        data = json.loads(text)
    except (ValueError, TypeError):
        return {}
    return data if isinstance(data, dict) else {}


def _default(shape: FieldShape, path: FrozenSet[str]) -> Any:
    if shape.kind == FieldKind.REPEATED:
        return []
    if shape.kind == FieldKind.MAP:
        return {}
    if shape.kind == FieldKind.MESSAGE:
        if shape.message.full_name in path:
            return {}
        return _merge(shape.message, {}, path)
    return shape.zero


def _merge(schema: Descriptor, existing: Mapping[str, Any], path: FrozenSet[str]) -> Dict[str, Any]:
    path = path | {schema.full_name}
    template: Dict[str, Any] = {}

    for field in schema.fields:
        shape = classify_field(field)
        name = shape.json_name

        if name not in existing:
            template[name] = _default(shape, path)
            continue

        value = existing[name]
        if (
            shape.kind == FieldKind.MESSAGE
            and isinstance(value, dict)
            and shape.message.full_name not in path
        ):
            template[name] = _merge(shape.message, value, path)
        else:
            template[name] = value

    return template


def synthesize(
    schema: Descriptor,
    existing: Union[str, Mapping[str, Any], None] = None,
) -> Dict[str, Any]:
    """Build a request template for a message schema.

    Args:
        schema: Input message descriptor of the method.
        existing: The body the user already has, as JSON text or an
            already-parsed mapping. Text that does not parse to a JSON
            object counts as {}.

    Returns:
        An insertion-ordered dict with one key per declared field, in
        declaration order. Never None; an empty message yields {}.
    """
    if isinstance(existing, Mapping):
        data = copy.deepcopy(dict(existing))
    else:
        data = parse_object(existing)
    return _merge(schema, data, frozenset())


def render_template(
    schema: Descriptor,
    existing: Union[str, Mapping[str, Any], None] = None,
) -> str:
    """Synthesize a template and serialize it as indented JSON text."""
    template = synthesize(schema, existing)
    return json.dumps(template, indent=2, ensure_ascii=False)
