"""C header generator for WebGPU-style JSON API schemas.

Compiles a dawn.json-shaped schema (objects, structures, enums, bitmasks,
callbacks, free functions) into a single dependency-ordered C header.

Usage:
    python headers_gen.py --schema dawn.json --exclude-tags dawn,emscripten -o webgpu.h
"""

import argparse
import json
import os
import re
import sys
import tempfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType

DEFAULT_SCHEMA = Path("dawn.json")
DEFAULT_NAMESPACE = "WGPU"


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class GenerateConfig:
    schema: Path
    output: Path | None
    namespace: str
    exclude_tags: frozenset[str]
    header_guard: str


VALID_ERROR_CODES = {
    "INVALID_TAG",
    "INVALID_NAMESPACE",
    "PATH_NOT_FOUND",
}
_TAG_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_NAMESPACE_RE = re.compile(r"^[A-Z][A-Z0-9]*$")


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def normalize_tags(raw_tags: object) -> frozenset[str]:
    if raw_tags is None:
        return frozenset()
    if not isinstance(raw_tags, list):
        raise ConfigError(
            "INVALID_TAG",
            f"Invalid --exclude-tags value type: {type(raw_tags).__name__}",
            "Pass tags as --exclude-tags dawn,emscripten.",
        )

    tags: set[str] = set()
    for entry in raw_tags:
        if not isinstance(entry, str):
            raise ConfigError(
                "INVALID_TAG",
                f"Invalid --exclude-tags entry type: {type(entry).__name__}",
                "Pass tags as --exclude-tags dawn,emscripten.",
            )
        for tag in entry.split(","):
            tag = tag.strip()
            if not tag:
                continue
            if not _TAG_RE.match(tag):
                raise ConfigError(
                    "INVALID_TAG",
                    f"Invalid tag: {tag!r}",
                    "Tags may only contain letters, digits, '_' and '-'.",
                )
            tags.add(tag)
    return frozenset(tags)


def validate_namespace(raw: str) -> str:
    if _NAMESPACE_RE.match(raw):
        return raw
    raise ConfigError(
        "INVALID_NAMESPACE",
        f"Invalid namespace: {raw!r}",
        "Use an upper-case C identifier such as WGPU.",
    )


def validate_path_exists(
    path: Path | None, flag: str, suggestion: str | None = None
) -> Path:
    if path is None:
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"{flag} is required: no path provided.",
            suggestion or f"Pass the path explicitly: {flag} /path/to/resource",
        )
    if path.exists():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        suggestion or "Provide an existing path for this flag.",
    )


def header_guard_for(output: Path | None, namespace: str) -> str:
    if output is None:
        return f"{namespace}_H_"
    stem = re.sub(r"[^A-Za-z0-9]", "_", output.name).upper()
    if stem[:1].isdigit():
        stem = f"{namespace}_{stem}"
    return f"{stem}_"


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate a C header from a WebGPU JSON API schema"
    )

    parser.add_argument("--schema", type=Path, default=DEFAULT_SCHEMA)
    parser.add_argument("--exclude-tags", action="append", default=None)
    parser.add_argument("--namespace", type=str, default=DEFAULT_NAMESPACE)
    parser.add_argument("--output", "-o", type=Path, default=None)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def validate_config(args: argparse.Namespace) -> GenerateConfig:
    exclude_tags = normalize_tags(args.exclude_tags)
    namespace = validate_namespace(args.namespace)
    schema = validate_path_exists(
        args.schema,
        "--schema",
        "Run from the directory holding dawn.json, or pass --schema /path/to/dawn.json",
    )
    return GenerateConfig(
        schema=schema,
        output=args.output,
        namespace=namespace,
        exclude_tags=exclude_tags,
        header_guard=header_guard_for(args.output, namespace),
    )


def build_config(argv: list[str] | None = None) -> GenerateConfig:
    return validate_config(parse_args(argv))


# ===--- Constants ---=== #

CATEGORY_STRUCTURE = "structure"
CATEGORY_OBJECT = "object"
CATEGORY_ENUM = "enum"
CATEGORY_BITMASK = "bitmask"
CATEGORY_FUNCTION_POINTER = "function pointer"
CATEGORY_CALLBACK_FUNCTION = "callback function"
CATEGORY_CALLBACK_INFO = "callback info"
CATEGORY_FUNCTION = "function"
CATEGORY_TYPEDEF = "typedef"
CATEGORY_CONSTANT = "constant"
CATEGORY_NATIVE = "native"

REGISTERED_CATEGORIES = frozenset(
    {
        CATEGORY_STRUCTURE,
        CATEGORY_OBJECT,
        CATEGORY_ENUM,
        CATEGORY_BITMASK,
        CATEGORY_FUNCTION_POINTER,
        CATEGORY_CALLBACK_FUNCTION,
        CATEGORY_CALLBACK_INFO,
        CATEGORY_TYPEDEF,
    }
)
STRUCT_LIKE_CATEGORIES = frozenset({CATEGORY_STRUCTURE, CATEGORY_CALLBACK_INFO})

PRIVATE_KEY_PREFIX = "_"

VALID_ANNOTATIONS = (None, "*", "const*", "const*const*")
CHAIN_DIRECTIONS = ("in", "out")

# "{ns}" is replaced with the configured namespace.
PRIMITIVE_TYPES = {
    "void": "void",
    "char": "char",
    "bool": "{ns}Bool",
    "int": "int",
    "float": "float",
    "double": "double",
    "int8_t": "int8_t",
    "int16_t": "int16_t",
    "int32_t": "int32_t",
    "int64_t": "int64_t",
    "uint8_t": "uint8_t",
    "uint16_t": "uint16_t",
    "uint32_t": "uint32_t",
    "uint64_t": "uint64_t",
    "size_t": "size_t",
    "void *": "void*",
    "void const *": "const void*",
    "string": "const char*",
}

ENUM_SENTINEL_NAME = "Force32"
ENUM_SENTINEL_VALUE = 0x7FFFFFFF

REFCOUNT_METHODS = ("add ref", "release")
STYPE_KEY = "s type"


# ===--- Errors ---=== #


class GeneratorError(Exception):
    """Base class for failures that abort a generation run."""


class SchemaParseError(GeneratorError):
    def __init__(self, message: str, key: str | None = None):
        if key is not None:
            message = f"{key}: {message}"
        super().__init__(message)
        self.key = key


class UnresolvedTypeError(GeneratorError):
    def __init__(self, key: str, type_name: str):
        super().__init__(
            f"{key}: type '{type_name}' is neither a primitive nor declared in the schema"
        )
        self.key = key
        self.type_name = type_name


class CyclicDependencyError(GeneratorError):
    def __init__(self, cycle: list[str]):
        super().__init__(f"By-value dependency cycle: {' -> '.join(cycle)}")
        self.cycle = tuple(cycle)


# ===--- Typed schema tree ---=== #


@dataclass(frozen=True)
class TypeRef:
    type_name: str
    annotation: str | None = None


@dataclass(frozen=True)
class RecordField:
    """One structure member or one function argument."""

    name: str
    type_name: str
    annotation: str | None = None
    length: int | str | None = None
    tags: frozenset[str] = frozenset()


@dataclass(frozen=True)
class EnumValue:
    name: str
    value: int
    tags: frozenset[str] = frozenset()


@dataclass(frozen=True)
class Method:
    name: str
    returns: TypeRef | None
    args: tuple[RecordField, ...]
    tags: frozenset[str] = frozenset()


@dataclass(frozen=True)
class SchemaNode:
    key: str
    category: str
    tags: frozenset[str]


@dataclass(frozen=True)
class StructureNode(SchemaNode):
    members: tuple[RecordField, ...]
    extensible: str | None
    chained: str | None


@dataclass(frozen=True)
class CallbackInfoNode(StructureNode):
    pass


@dataclass(frozen=True)
class ObjectNode(SchemaNode):
    methods: tuple[Method, ...]


@dataclass(frozen=True)
class EnumNode(SchemaNode):
    values: tuple[EnumValue, ...]


@dataclass(frozen=True)
class BitmaskNode(EnumNode):
    pass


@dataclass(frozen=True)
class FunctionPointerNode(SchemaNode):
    returns: TypeRef | None
    args: tuple[RecordField, ...]


@dataclass(frozen=True)
class CallbackFunctionNode(FunctionPointerNode):
    pass


@dataclass(frozen=True)
class FunctionNode(SchemaNode):
    returns: TypeRef | None
    args: tuple[RecordField, ...]


@dataclass(frozen=True)
class TypedefNode(SchemaNode):
    target: TypeRef


@dataclass(frozen=True)
class ConstantNode(SchemaNode):
    type_name: str
    value: str


@dataclass(frozen=True)
class NativeNode(SchemaNode):
    pass


@dataclass(frozen=True)
class SchemaDocument:
    """Parsed schema: non-private nodes keyed by schema key, in document order."""

    nodes: Mapping[str, SchemaNode]

    def of_category(self, *categories: str) -> list[SchemaNode]:
        return [n for n in self.nodes.values() if n.category in categories]


# ===--- Schema loading ---=== #


def _parse_tags(owner: str, raw: object) -> frozenset[str]:
    if raw is None:
        return frozenset()
    if not isinstance(raw, list) or not all(isinstance(t, str) for t in raw):
        raise SchemaParseError("'tags' must be a list of strings", owner)
    return frozenset(raw)


def _parse_annotation(owner: str, raw: object) -> str | None:
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise SchemaParseError("'annotation' must be a string", owner)
    annotation = raw.replace(" ", "")
    if annotation not in VALID_ANNOTATIONS:
        raise SchemaParseError(f"unsupported annotation {raw!r}", owner)
    return annotation


def _parse_chain_marker(owner: str, field_name: str, raw: object) -> str | None:
    if raw is None or raw is False:
        return None
    if raw is True:
        return "in"
    if raw in CHAIN_DIRECTIONS:
        return raw
    raise SchemaParseError(
        f"'{field_name}' must be true, \"in\" or \"out\", got {raw!r}", owner
    )


def parse_record_field(owner: str, raw: object) -> RecordField:
    if not isinstance(raw, dict):
        raise SchemaParseError("member/argument entries must be objects", owner)
    name = raw.get("name")
    type_name = raw.get("type")
    if not isinstance(name, str) or not name:
        raise SchemaParseError("member/argument is missing 'name'", owner)
    if not isinstance(type_name, str) or not type_name:
        raise SchemaParseError(f"'{name}' is missing 'type'", owner)
    length = raw.get("length")
    if isinstance(length, bool) or (
        length is not None and not isinstance(length, (int, str))
    ):
        raise SchemaParseError(f"'{name}' has a non-integer, non-string length", owner)
    return RecordField(
        name=name,
        type_name=type_name,
        annotation=_parse_annotation(owner, raw.get("annotation")),
        length=length,
        tags=_parse_tags(owner, raw.get("tags")),
    )


def _parse_record_list(owner: str, raw: object, field_name: str) -> tuple[RecordField, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise SchemaParseError(f"'{field_name}' must be a list", owner)
    return tuple(parse_record_field(owner, item) for item in raw)


def _parse_enum_int(owner: str, raw: object) -> int:
    if isinstance(raw, bool):
        raise SchemaParseError(f"enum value must be an integer, got {raw!r}", owner)
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        try:
            return int(raw, 0)
        except ValueError:
            pass
    raise SchemaParseError(f"enum value must be an integer, got {raw!r}", owner)


def parse_enum_values(owner: str, raw: object) -> tuple[EnumValue, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise SchemaParseError("'values' must be a list", owner)
    values = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict) or not isinstance(item.get("name"), str):
            raise SchemaParseError("enum values need a string 'name'", owner)
        raw_value = item.get("value")
        value = index if raw_value is None else _parse_enum_int(owner, raw_value)
        # Force32 reserves 0x7FFFFFFF and pins the enum to 32 bits.
        if not 0 <= value < ENUM_SENTINEL_VALUE:
            raise SchemaParseError(
                f"enum value {item['name']!r} out of range: {value}", owner
            )
        values.append(
            EnumValue(item["name"], value, _parse_tags(owner, item.get("tags")))
        )
    return tuple(values)


def parse_returns(owner: str, raw: object) -> TypeRef | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        return TypeRef(raw)
    if isinstance(raw, dict) and isinstance(raw.get("type"), str):
        return TypeRef(raw["type"], _parse_annotation(owner, raw.get("annotation")))
    raise SchemaParseError("'returns' must be a type name or {type, annotation}", owner)


def parse_method(owner: str, raw: object) -> Method:
    if not isinstance(raw, dict) or not isinstance(raw.get("name"), str):
        raise SchemaParseError("methods need a string 'name'", owner)
    method_owner = f"{owner}.{raw['name']}"
    return Method(
        name=raw["name"],
        returns=parse_returns(method_owner, raw.get("returns")),
        args=_parse_record_list(method_owner, raw.get("args"), "args"),
        tags=_parse_tags(method_owner, raw.get("tags")),
    )


def parse_node(key: str, raw: object) -> SchemaNode:
    """Turn one raw document entry into its typed variant."""
    if not isinstance(raw, dict):
        raise SchemaParseError("schema entries must be objects", key)
    category = raw.get("category")
    tags = _parse_tags(key, raw.get("tags"))

    if category in STRUCT_LIKE_CATEGORIES:
        node_type = StructureNode if category == CATEGORY_STRUCTURE else CallbackInfoNode
        return node_type(
            key=key,
            category=category,
            tags=tags,
            members=_parse_record_list(key, raw.get("members"), "members"),
            extensible=_parse_chain_marker(key, "extensible", raw.get("extensible")),
            chained=_parse_chain_marker(key, "chained", raw.get("chained")),
        )
    if category == CATEGORY_OBJECT:
        methods = raw.get("methods") or []
        if not isinstance(methods, list):
            raise SchemaParseError("'methods' must be a list", key)
        return ObjectNode(
            key=key,
            category=category,
            tags=tags,
            methods=tuple(parse_method(key, m) for m in methods),
        )
    if category in (CATEGORY_ENUM, CATEGORY_BITMASK):
        node_type = EnumNode if category == CATEGORY_ENUM else BitmaskNode
        return node_type(
            key=key,
            category=category,
            tags=tags,
            values=parse_enum_values(key, raw.get("values")),
        )
    if category in (CATEGORY_FUNCTION_POINTER, CATEGORY_CALLBACK_FUNCTION):
        node_type = (
            FunctionPointerNode
            if category == CATEGORY_FUNCTION_POINTER
            else CallbackFunctionNode
        )
        return node_type(
            key=key,
            category=category,
            tags=tags,
            returns=parse_returns(key, raw.get("returns")),
            args=_parse_record_list(key, raw.get("args"), "args"),
        )
    if category == CATEGORY_FUNCTION:
        return FunctionNode(
            key=key,
            category=category,
            tags=tags,
            returns=parse_returns(key, raw.get("returns")),
            args=_parse_record_list(key, raw.get("args"), "args"),
        )
    if category == CATEGORY_TYPEDEF:
        if not isinstance(raw.get("type"), str):
            raise SchemaParseError("typedef is missing 'type'", key)
        return TypedefNode(
            key=key,
            category=category,
            tags=tags,
            target=TypeRef(raw["type"], _parse_annotation(key, raw.get("annotation"))),
        )
    if category == CATEGORY_CONSTANT:
        if not isinstance(raw.get("type"), str) or "value" not in raw:
            raise SchemaParseError("constant needs 'type' and 'value'", key)
        return ConstantNode(
            key=key,
            category=category,
            tags=tags,
            type_name=raw["type"],
            value=str(raw["value"]),
        )
    if category == CATEGORY_NATIVE:
        return NativeNode(key=key, category=category, tags=tags)
    raise SchemaParseError(f"unknown category {category!r}", key)


def parse_schema(text: str) -> SchemaDocument:
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as err:
        raise SchemaParseError(
            f"invalid JSON: {err.msg} (line {err.lineno}, column {err.colno})"
        ) from err
    if not isinstance(raw, dict):
        raise SchemaParseError("schema top level must be an object")

    nodes = {}
    for key, value in raw.items():
        if key.startswith(PRIVATE_KEY_PREFIX):
            continue
        nodes[key] = parse_node(key, value)
    return SchemaDocument(nodes=MappingProxyType(nodes))


def read_schema(path: Path) -> SchemaDocument:
    data = Path(path).read_bytes()
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as err:
        raise SchemaParseError(f"invalid UTF-8: {err}") from err
    return parse_schema(text)


# ===--- Type registry ---=== #


@dataclass(frozen=True)
class RegistryEntry:
    key: str
    name: str
    category: str


@dataclass(frozen=True)
class TypeRegistry:
    """Schema key -> generated identifier map, frozen after loading.

    Attributes:
        entries: One RegistryEntry per registered (non-private) type.
        order: Generation Order. Registration (document) order of entries;
            every later phase iterates this instead of re-deriving one.
        declared: Every non-private key in the document, registered or not.
            Used by the type formatter to tell implicit declarations apart
            from references to nothing.
        namespace: Type prefix, e.g. "WGPU".
    """

    entries: Mapping[str, RegistryEntry]
    order: tuple[str, ...]
    declared: frozenset[str]
    namespace: str

    def lookup(self, key: str) -> RegistryEntry | None:
        return self.entries.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self.entries

    @property
    def function_prefix(self) -> str:
        return self.namespace.lower()


def build_registry(document: SchemaDocument, namespace: str) -> TypeRegistry:
    entries = {}
    for key, node in document.nodes.items():
        if node.category not in REGISTERED_CATEGORIES:
            continue
        entries[key] = RegistryEntry(
            key=key,
            name=namespace + to_pascal_case(key),
            category=node.category,
        )
    return TypeRegistry(
        entries=MappingProxyType(entries),
        order=tuple(entries),
        declared=frozenset(document.nodes),
        namespace=namespace,
    )


# ===--- Name conversion ---=== #


def to_pascal_case(name: str) -> str:
    return "".join(token[:1].upper() + token[1:] for token in name.split())


def to_camel_case(name: str) -> str:
    pascal = to_pascal_case(name)
    return pascal[:1].lower() + pascal[1:]


def to_enum_member_name(name: str) -> str:
    return to_pascal_case(name.replace("-", " "))


def to_upper_snake_case(name: str) -> str:
    return "_".join(token.upper() for token in name.replace("-", " ").split())


# ===--- Type formatting ---=== #


def resolve_base_type(type_name: str, registry: TypeRegistry, owner: str) -> str:
    primitive = PRIMITIVE_TYPES.get(type_name)
    if primitive is not None:
        return primitive.format(ns=registry.namespace)
    entry = registry.lookup(type_name)
    if entry is not None:
        return entry.name
    if type_name in registry.declared:
        return registry.namespace + to_pascal_case(type_name)
    raise UnresolvedTypeError(owner, type_name)


def apply_annotation(base: str, annotation: str | None) -> str:
    if annotation is None:
        return base
    if annotation == "*":
        return f"{base}*"
    # Bases that already read as immutable take const after the type.
    immutable = base.startswith("const ")
    if annotation == "const*":
        return f"{base} const*" if immutable else f"const {base}*"
    if annotation == "const*const*":
        return f"{base} const* const*" if immutable else f"const {base}* const*"
    raise ValueError(f"Unknown annotation: {annotation!r}")


def format_type(
    type_name: str, annotation: str | None, registry: TypeRegistry, owner: str
) -> str:
    return apply_annotation(resolve_base_type(type_name, registry, owner), annotation)


def format_return_type(returns: TypeRef | None, registry: TypeRegistry, owner: str) -> str:
    if returns is None:
        return "void"
    return format_type(returns.type_name, returns.annotation, registry, owner)


def format_declarator(field: RecordField, registry: TypeRegistry, owner: str) -> str:
    """Render `type name` (or `type name[N]` for fixed arrays)."""
    c_type = format_type(field.type_name, field.annotation, registry, owner)
    name = to_camel_case(field.name)
    if isinstance(field.length, int) and field.annotation is None:
        return f"{c_type} {name}[{field.length}]"
    return f"{c_type} {name}"


# ===--- Dependency resolution ---=== #


@dataclass(frozen=True)
class Dependency:
    key: str
    by_value: bool


def is_by_value(field: RecordField) -> bool:
    return field.annotation is None


def build_dependency_graph(
    document: SchemaDocument, registry: TypeRegistry
) -> dict[str, tuple[Dependency, ...]]:
    """Collect struct-like -> struct-like member references per node.

    Dependencies keep member-declaration order. A type referenced by several
    members appears once, as by-value if any of those references is.
    Excluded members still contribute edges.
    """
    graph = {}
    for key in registry.order:
        node = document.nodes[key]
        if node.category not in STRUCT_LIKE_CATEGORIES:
            continue
        found: dict[str, bool] = {}
        for member in node.members:
            entry = registry.lookup(member.type_name)
            if entry is None or entry.category not in STRUCT_LIKE_CATEGORIES:
                continue
            found[entry.key] = found.get(entry.key, False) or is_by_value(member)
        graph[key] = tuple(Dependency(k, v) for k, v in found.items())
    return graph


# ===--- Emission ---=== #


def is_excluded(tags: frozenset[str], exclude_tags: frozenset[str]) -> bool:
    return not tags.isdisjoint(exclude_tags)


def format_signature_args(
    args: Iterable[RecordField],
    registry: TypeRegistry,
    owner: str,
    exclude_tags: frozenset[str],
) -> str:
    params = [
        format_declarator(arg, registry, owner)
        for arg in args
        if not is_excluded(arg.tags, exclude_tags)
    ]
    return ", ".join(params) if params else "void"


def generate_enum(node: EnumNode, registry: TypeRegistry, exclude_tags: frozenset[str]) -> list[str]:
    name = registry.lookup(node.key).name
    lines = [f"typedef enum {name} {{"]
    for value in node.values:
        if is_excluded(value.tags, exclude_tags):
            continue
        lines.append(
            f"    {name}_{to_enum_member_name(value.name)} = 0x{value.value:08X},"
        )
    lines.append(f"    {name}_{ENUM_SENTINEL_NAME} = 0x{ENUM_SENTINEL_VALUE:08X}")
    lines.append(f"}} {name};")
    if node.category == CATEGORY_BITMASK:
        lines.append(f"typedef {registry.namespace}Flags {name}Flags;")
    lines.append("")
    return lines


def generate_function_pointer(
    node: FunctionPointerNode, registry: TypeRegistry, exclude_tags: frozenset[str]
) -> str:
    name = registry.lookup(node.key).name
    ret = format_return_type(node.returns, registry, node.key)
    params = format_signature_args(node.args, registry, node.key, exclude_tags)
    return f"typedef {ret} (*{name})({params});"


def generate_chain_struct(registry: TypeRegistry) -> list[str]:
    ns = registry.namespace
    stype = registry.lookup(STYPE_KEY)
    stype_name = stype.name if stype is not None else "uint32_t"
    return [
        f"typedef struct {ns}ChainedStruct {{",
        f"    struct {ns}ChainedStruct* next;",
        f"    {stype_name} sType;",
        f"}} {ns}ChainedStruct;",
        "",
    ]


def generate_struct_body(
    node: StructureNode, registry: TypeRegistry, exclude_tags: frozenset[str]
) -> list[str]:
    ns = registry.namespace
    name = registry.lookup(node.key).name
    lines = [f"struct {name} {{"]
    if node.extensible == "in":
        lines.append(f"    const {ns}ChainedStruct* nextInChain;")
    elif node.extensible == "out":
        lines.append(f"    {ns}ChainedStruct* nextInChain;")
    elif node.chained is not None:
        lines.append(f"    {ns}ChainedStruct chain;")
    for member in node.members:
        if is_excluded(member.tags, exclude_tags):
            continue
        lines.append(f"    {format_declarator(member, registry, node.key)};")
    lines.append("};")
    lines.append("")
    return lines


def emit_struct_bodies(
    document: SchemaDocument,
    registry: TypeRegistry,
    graph: Mapping[str, tuple[Dependency, ...]],
    exclude_tags: frozenset[str],
) -> list[str]:
    """Emit struct-like bodies so every by-value use follows its definition.

    Depth-first over Generation Order; a key is marked emitted before its
    dependencies are visited. Only by-value dependencies are recursed into:
    pointer uses are satisfied by the forward aliases emitted earlier.
    Meeting a key that is still on the visit path through a by-value edge
    is a layout that cannot exist in C.

    Raises:
        CyclicDependencyError: A by-value cycle exists.
        UnresolvedTypeError: Propagated from member formatting.
    """
    emitted = {key: False for key in registry.order}
    path: list[str] = []
    lines: list[str] = []

    def visit(key: str) -> None:
        emitted[key] = True
        path.append(key)
        for dep in graph[key]:
            if not dep.by_value:
                continue
            if dep.key in path:
                raise CyclicDependencyError(path[path.index(dep.key):] + [dep.key])
            if not emitted[dep.key]:
                visit(dep.key)
        path.pop()
        node = document.nodes[key]
        if not is_excluded(node.tags, exclude_tags):
            lines.extend(generate_struct_body(node, registry, exclude_tags))

    for key in registry.order:
        if key in graph and not emitted[key]:
            visit(key)
    return lines


@dataclass(frozen=True)
class Prototype:
    symbol: str
    return_type: str
    params: str


def object_methods(node: ObjectNode) -> tuple[Method, ...]:
    """Schema methods followed by any missing reference-counting methods."""
    declared = {m.name for m in node.methods}
    extra = tuple(
        Method(name=name, returns=None, args=())
        for name in REFCOUNT_METHODS
        if name not in declared
    )
    return node.methods + extra


def collect_prototypes(
    document: SchemaDocument, registry: TypeRegistry, exclude_tags: frozenset[str]
) -> list[Prototype]:
    prefix = registry.function_prefix
    prototypes = []
    for node in document.of_category(CATEGORY_FUNCTION):
        if is_excluded(node.tags, exclude_tags):
            continue
        prototypes.append(
            Prototype(
                symbol=prefix + to_pascal_case(node.key),
                return_type=format_return_type(node.returns, registry, node.key),
                params=format_signature_args(node.args, registry, node.key, exclude_tags),
            )
        )
    for key in registry.order:
        node = document.nodes[key]
        if node.category != CATEGORY_OBJECT or is_excluded(node.tags, exclude_tags):
            continue
        receiver = RecordField(name=key, type_name=key)
        for method in object_methods(node):
            if is_excluded(method.tags, exclude_tags):
                continue
            owner = f"{key}.{method.name}"
            prototypes.append(
                Prototype(
                    symbol=prefix + to_pascal_case(key) + to_pascal_case(method.name),
                    return_type=format_return_type(method.returns, registry, owner),
                    params=format_signature_args(
                        (receiver, *method.args), registry, owner, exclude_tags
                    ),
                )
            )
    return prototypes


@dataclass(frozen=True)
class HeaderSections:
    """Generated declaration groups, each in Generation Order."""

    constants: tuple[str, ...]
    handles: tuple[str, ...]
    forward_structs: tuple[str, ...]
    enums: tuple[str, ...]
    typedefs: tuple[str, ...]
    function_pointers: tuple[str, ...]
    chain_struct: tuple[str, ...]
    struct_bodies: tuple[str, ...]
    prototypes: tuple[Prototype, ...]


def generate_sections(
    document: SchemaDocument, registry: TypeRegistry, exclude_tags: frozenset[str]
) -> HeaderSections:
    handles: list[str] = []
    forward_structs: list[str] = []
    enums: list[str] = []
    typedefs: list[str] = []
    function_pointers: list[str] = []

    for key in registry.order:
        node = document.nodes[key]
        if is_excluded(node.tags, exclude_tags):
            continue
        name = registry.lookup(key).name
        if node.category == CATEGORY_OBJECT:
            handles.append(f"typedef struct {name}Impl* {name};")
        elif node.category in STRUCT_LIKE_CATEGORIES:
            forward_structs.append(f"typedef struct {name} {name};")
        elif node.category in (CATEGORY_ENUM, CATEGORY_BITMASK):
            enums.extend(generate_enum(node, registry, exclude_tags))
        elif node.category == CATEGORY_TYPEDEF:
            target = format_type(
                node.target.type_name, node.target.annotation, registry, key
            )
            typedefs.append(f"typedef {target} {name};")
        elif node.category in (CATEGORY_FUNCTION_POINTER, CATEGORY_CALLBACK_FUNCTION):
            function_pointers.append(
                generate_function_pointer(node, registry, exclude_tags)
            )

    constants = [
        f"#define {registry.namespace}_{to_upper_snake_case(node.key)} ({node.value})"
        for node in document.of_category(CATEGORY_CONSTANT)
        if not is_excluded(node.tags, exclude_tags)
    ]

    graph = build_dependency_graph(document, registry)
    return HeaderSections(
        constants=tuple(constants),
        handles=tuple(handles),
        forward_structs=tuple(forward_structs),
        enums=tuple(enums),
        typedefs=tuple(typedefs),
        function_pointers=tuple(function_pointers),
        chain_struct=tuple(generate_chain_struct(registry)),
        struct_bodies=tuple(emit_struct_bodies(document, registry, graph, exclude_tags)),
        prototypes=tuple(collect_prototypes(document, registry, exclude_tags)),
    )


# ===--- Header assembly ---=== #


def format_export_macros(namespace: str) -> list[str]:
    export = f"{namespace}_EXPORT"
    return [
        f"#if defined({namespace}_SHARED_LIBRARY)",
        "#    if defined(_WIN32)",
        f"#        if defined({namespace}_IMPLEMENTATION)",
        f"#            define {export} __declspec(dllexport)",
        "#        else",
        f"#            define {export} __declspec(dllimport)",
        "#        endif",
        "#    else",
        f"#        if defined({namespace}_IMPLEMENTATION)",
        f'#            define {export} __attribute__((visibility("default")))',
        "#        else",
        f"#            define {export}",
        "#        endif",
        "#    endif",
        "#else",
        f"#    define {export}",
        "#endif",
    ]


def _section(title: str, body: Iterable[str]) -> list[str]:
    body = list(body)
    if not body:
        return []
    if body[-1] != "":
        body.append("")
    return [f"// ===--- {title} ---=== //", "", *body]


def assemble_header(
    sections: HeaderSections, namespace: str, header_guard: str, source_name: str
) -> str:
    """Lay out the sections in their fixed order and return the header text."""
    lines = [
        f"// Generated by headers_gen from {source_name}. Do not edit.",
        "",
        f"#ifndef {header_guard}",
        f"#define {header_guard}",
        "",
        *format_export_macros(namespace),
        "",
        "#include <stdint.h>",
        "#include <stddef.h>",
        "",
    ]
    lines += _section("Constants", sections.constants)
    lines += _section(
        "Primitive aliases",
        [f"typedef uint32_t {namespace}Bool;", f"typedef uint64_t {namespace}Flags;"],
    )
    lines += _section("Handles", sections.handles)
    lines += _section("Structure forward declarations", sections.forward_structs)
    lines += _section("Enums", sections.enums)
    lines += _section("Typedefs", sections.typedefs)
    lines += _section("Function pointers", sections.function_pointers)
    lines += _section("Chain link", sections.chain_struct)
    lines += _section("Structures", sections.struct_bodies)

    lines += ["#if defined(__cplusplus)", 'extern "C" {', "#endif", ""]
    if sections.prototypes:
        lines.append(f"#if !defined({namespace}_SKIP_PROCS)")
        for proto in sections.prototypes:
            proc = f"{namespace}Proc{proto.symbol[len(namespace):]}"
            lines.append(f"typedef {proto.return_type} (*{proc})({proto.params});")
        lines += ["#endif", ""]
        lines.append(f"#if !defined({namespace}_SKIP_DECLARATIONS)")
        for proto in sections.prototypes:
            lines.append(
                f"{namespace}_EXPORT {proto.return_type} {proto.symbol}({proto.params});"
            )
        lines += ["#endif", ""]
    lines += ["#if defined(__cplusplus)", "}", "#endif", ""]
    lines.append(f"#endif // {header_guard}")
    return "\n".join(lines) + "\n"


def generate_header(
    document: SchemaDocument,
    registry: TypeRegistry,
    exclude_tags: frozenset[str],
    header_guard: str,
    source_name: str,
) -> str:
    sections = generate_sections(document, registry, exclude_tags)
    return assemble_header(sections, registry.namespace, header_guard, source_name)


# ===--- Writer ---=== #


@dataclass(frozen=True)
class HeaderWriteResult:
    """Where the header went and how big it is.

    Attributes:
        target: Output path as string, or "<stdout>".
        line_count: Newline characters in the written text.
        byte_count: UTF-8 bytes written.
    """

    target: str
    line_count: int
    byte_count: int


def write_header(text: str, output: Path | None) -> HeaderWriteResult:
    """Flush finished header text to a file (atomically) or to stdout.

    The file is first written under a temporary name in the destination
    directory and then moved over the target, so a reader never sees a
    partial header.

    Raises:
        OSError: Propagated directly if the filesystem write fails.
    """
    data = text.encode("utf-8")
    if output is None:
        sys.stdout.write(text)
        sys.stdout.flush()
        return HeaderWriteResult("<stdout>", text.count("\n"), len(data))

    output = Path(output)
    output.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{output.name}.", suffix=".tmp", dir=output.parent
    )
    try:
        with os.fdopen(fd, "wb") as tmp:
            tmp.write(data)
        os.replace(tmp_name, output)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return HeaderWriteResult(str(output), text.count("\n"), len(data))


# ===--- Summary report ---=== #


SUMMARY_CATEGORIES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Objects:", (CATEGORY_OBJECT,)),
    ("Structures:", (CATEGORY_STRUCTURE, CATEGORY_CALLBACK_INFO)),
    ("Enums:", (CATEGORY_ENUM, CATEGORY_BITMASK)),
    ("Callbacks:", (CATEGORY_FUNCTION_POINTER, CATEGORY_CALLBACK_FUNCTION)),
    ("Typedefs:", (CATEGORY_TYPEDEF,)),
    ("Functions:", (CATEGORY_FUNCTION,)),
    ("Constants:", (CATEGORY_CONSTANT,)),
)


@dataclass(frozen=True)
class CategoryCount:
    """Top-level nodes of one summary row, split into emitted and excluded.

    Invariant: emitted + excluded == total.
    """

    label: str
    total: int
    emitted: int
    excluded: int


@dataclass(frozen=True)
class GenerationSummary:
    source_label: str
    exclude_tags: tuple[str, ...]
    counts: tuple[CategoryCount, ...]
    write_result: HeaderWriteResult


def build_category_counts(
    document: SchemaDocument, exclude_tags: frozenset[str]
) -> tuple[CategoryCount, ...]:
    counts = []
    for label, categories in SUMMARY_CATEGORIES:
        nodes = document.of_category(*categories)
        excluded = sum(1 for n in nodes if is_excluded(n.tags, exclude_tags))
        counts.append(
            CategoryCount(
                label=label,
                total=len(nodes),
                emitted=len(nodes) - excluded,
                excluded=excluded,
            )
        )
    return tuple(counts)


def build_generation_summary(
    config: GenerateConfig, document: SchemaDocument, write_result: HeaderWriteResult
) -> GenerationSummary:
    return GenerationSummary(
        source_label=config.schema.name,
        exclude_tags=tuple(sorted(config.exclude_tags)),
        counts=build_category_counts(document, config.exclude_tags),
        write_result=write_result,
    )


def format_generation_summary(summary: GenerationSummary) -> str:
    """Render the post-generation report. Ends with exactly one newline."""
    lines = [f"Header generated from {summary.source_label}:", ""]
    lines.append(f"  Output:     {summary.write_result.target}")
    if summary.exclude_tags:
        lines.append(f"  Excluded:   {', '.join(summary.exclude_tags)}")
    lines.append("")
    lines.append("  Declarations:")
    for cc in summary.counts:
        row = f"    {cc.label:<12}{cc.emitted:>6}"
        if cc.excluded:
            row += f"  ({cc.excluded} excluded by tag)"
        lines.append(row)
    lines.append("")
    lines.append(
        f"  Total: {summary.write_result.line_count:,} lines, "
        f"{summary.write_result.byte_count:,} bytes"
    )
    lines.append("")
    return "\n".join(lines)


def print_generation_summary(summary: GenerationSummary) -> None:
    print(format_generation_summary(summary), end="", file=sys.stderr)


# ===--- Main generation ---=== #


def run_generate(config: GenerateConfig) -> HeaderWriteResult:
    """Load, resolve and emit; write only once every phase has succeeded.

    Raises:
        OSError: Schema not readable or output not writable.
        SchemaParseError: Malformed schema document.
        UnresolvedTypeError: A type reference matches nothing.
        CyclicDependencyError: Structures contain each other by value.
    """
    print(f"Parsing: {config.schema}", file=sys.stderr)
    document = read_schema(config.schema)
    registry = build_registry(document, config.namespace)
    print(
        f"  Registry: {len(registry.order)} types, {len(document.nodes)} declarations",
        file=sys.stderr,
    )
    if config.exclude_tags:
        print(
            f"  Excluding tags: {', '.join(sorted(config.exclude_tags))}",
            file=sys.stderr,
        )

    text = generate_header(
        document, registry, config.exclude_tags, config.header_guard, config.schema.name
    )
    result = write_header(text, config.output)
    print_generation_summary(build_generation_summary(config, document, result))
    return result


def main(argv: list[str] | None = None):
    try:
        config = build_config(argv)
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}", file=sys.stderr)
        if err.suggestion:
            print(f"Hint: {err.suggestion}", file=sys.stderr)
        raise SystemExit(1) from err

    try:
        run_generate(config)
    except (OSError, SchemaParseError) as err:
        print(f"Error: {err}", file=sys.stderr)
        raise SystemExit(1) from err
    except (UnresolvedTypeError, CyclicDependencyError) as err:
        print(f"Schema error: {err}", file=sys.stderr)
        raise SystemExit(1) from err


if __name__ == "__main__":
    main()
