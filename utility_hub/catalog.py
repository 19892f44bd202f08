"""Builtin utility tools compiled into the server."""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import math
import random
import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping
from urllib.parse import quote, urlsplit
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import VALIDATION_ERROR, UtilityHubError
from .models import ParameterSchema, ToolDescriptor, ToolSchema

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .registry import RegistryCache

Handler = Callable[[Mapping[str, Any]], "Any | Awaitable[Any]"]

_URI_COMPONENT_SAFE = "-_.!~*'()"
_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_SECONDS_CUTOFF = 10_000_000_000
_PASSWORD_SYMBOLS = "!@#$%^&*()_+-=[]{}|;:,.<>?"


@dataclass(frozen=True, slots=True)
class BuiltinTool:
    descriptor: ToolDescriptor
    handler: Handler
    refreshes_registry: bool = False

    @property
    def name(self) -> str:
        return self.descriptor.name


def _param(kind: str, description: str, **extra: Any) -> ParameterSchema:
    if "enum" in extra and extra["enum"] is not None:
        extra["enum"] = tuple(extra["enum"])
    return ParameterSchema(kind=kind, description=description, **extra)


def _builtin(name: str, description: str, properties: dict[str, ParameterSchema], required: tuple[str, ...] = ()) -> ToolDescriptor:
    return ToolDescriptor(
        name=name,
        description=description,
        kind="builtin",
        body_schema=ToolSchema(properties=properties, required=required),
    )


def _invalid(message: str) -> UtilityHubError:
    return UtilityHubError(VALIDATION_ERROR, message)


def url_validator(args: Mapping[str, Any]) -> str:
    url = args["url"]
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return f"Invalid URL: {url}\nError: URL must include a scheme and a host"
    secure = "(Secure)" if parts.scheme == "https" else "(Not Secure)"
    params_line = f"Parameters: {parts.query}" if parts.query else "No parameters"
    return "\n".join(
        [
            "URL Analysis:",
            f"Valid URL: {url}",
            f"Protocol: {parts.scheme}: {secure}",
            f"Domain: {parts.hostname or ''}",
            f"Path: {parts.path or '/'}",
            params_line,
            f"Total Length: {len(url)} characters",
        ]
    )


def json_formatter(args: Mapping[str, Any]) -> str:
    action = args.get("action", "format")
    try:
        parsed = json.loads(args["json"])
    except ValueError as exc:
        raise _invalid(f"Invalid JSON: {exc}") from exc
    if action == "minify":
        return "Valid JSON (Minified):\n" + json.dumps(parsed, ensure_ascii=False, separators=(",", ":"))
    if action == "validate":
        size = len(parsed) if isinstance(parsed, (dict, list)) else 0
        return f"JSON is valid!\nValue has {size} top-level entries"
    return "Valid JSON (Formatted):\n" + json.dumps(parsed, indent=2, ensure_ascii=False)


def base64_converter(args: Mapping[str, Any]) -> str:
    text = args["text"]
    if args["action"] == "encode":
        encoded = base64.b64encode(text.encode("utf-8")).decode("ascii")
        return f"Base64 Encoded:\n{encoded}\n\nOriginal: {len(text)} chars -> Encoded: {len(encoded)} chars"
    try:
        decoded = base64.b64decode(text.encode("ascii"), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeError) as exc:
        raise _invalid(f"Error decoding Base64: {exc}") from exc
    return f"Base64 Decoded:\n{decoded}\n\nEncoded: {len(text)} chars -> Decoded: {len(decoded)} chars"


def hash_generator(args: Mapping[str, Any]) -> str:
    text = args["text"]
    algorithm = args.get("algorithm", "sha256")
    digest = hashlib.new(algorithm, text.encode("utf-8")).hexdigest()
    return (
        f"{algorithm.upper()} Hash:\n{digest}\n\n"
        f'Original text: "{text}"\nHash length: {len(digest)} characters'
    )


def _parse_moment(value: str) -> datetime:
    stripped = value.strip()
    if stripped.isdigit():
        number = int(stripped)
        seconds = number if number < _SECONDS_CUTOFF else number / 1000
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise _invalid("Error converting timestamp: Invalid date/timestamp format") from exc
    try:
        moment = datetime.fromisoformat(stripped.replace("Z", "+00:00"))
    except ValueError as exc:
        raise _invalid("Error converting timestamp: Invalid date/timestamp format") from exc
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def timestamp_converter(args: Mapping[str, Any]) -> str:
    zone_name = args.get("timezone", "UTC")
    zone: tzinfo
    if zone_name.upper() == "UTC":
        zone = timezone.utc
    else:
        try:
            zone = ZoneInfo(zone_name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise _invalid(f"Error converting timestamp: Unknown timezone '{zone_name}'") from exc
    moment = _parse_moment(args["input"])
    local = moment.astimezone(zone)
    unix_ms = int(moment.timestamp() * 1000)
    return "\n".join(
        [
            "Timestamp Conversion:",
            f"Human Readable: {local.strftime('%A, %B %d, %Y, %I:%M:%S %p %Z')}",
            f"ISO 8601: {moment.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')}",
            f"Unix (seconds): {unix_ms // 1000}",
            f"Unix (milliseconds): {unix_ms}",
            f"Timezone: {zone_name}",
        ]
    )


def qr_code_data(args: Mapping[str, Any]) -> str:
    text = args["text"]
    size = args.get("size", 200)
    url = f"https://api.qrserver.com/v1/create-qr-code/?size={size}x{size}&data={quote(text, safe=_URI_COMPONENT_SAFE)}"
    return "\n".join(
        [
            "QR Code Generated:",
            f'Text: "{text}"',
            f"QR Code URL: {url}",
            f"Size: {size}x{size} pixels",
        ]
    )


def email_validator(args: Mapping[str, Any]) -> str:
    email = args["email"]
    if not _EMAIL_PATTERN.match(email):
        return f"Invalid email format: {email}"
    local_part, domain = email.split("@", 1)
    domain_parts = domain.split(".")
    return "\n".join(
        [
            f"Valid Email: {email}",
            f"Local Part: {local_part}",
            f"Domain: {domain}",
            f"TLD: .{domain_parts[-1]}",
            f"Total Length: {len(email)} characters",
            f"Domain has {len(domain_parts)} parts",
        ]
    )


def slugify(text: str, *, separator: str = "-", max_length: int = 100) -> str:
    slug = re.sub(r"[^\w\s-]", "", text.lower().strip())
    slug = re.sub(r"[\s_-]+", separator, slug).strip(separator)
    if len(slug) > max_length:
        slug = slug[:max_length].rstrip(separator)
    return slug


def slug_generator(args: Mapping[str, Any]) -> str:
    separator = args.get("separator", "-")
    max_length = args.get("maxLength", 100)
    slug = slugify(args["text"], separator=separator, max_length=max_length)
    return "\n".join(
        [
            "Generated Slug:",
            f'Original: "{args["text"]}"',
            f'Slug: "{slug}"',
            f"Length: {len(slug)}/{max_length} characters",
            f'Separator: "{separator}"',
        ]
    )


def random_number(args: Mapping[str, Any]) -> str:
    low, high = args["min"], args["max"]
    decimals = args.get("decimals", 0)
    if low > high:
        raise _invalid(f"min ({low}) must not exceed max ({high})")
    sample = random.uniform(low, high)
    value: int | float = math.floor(sample) if decimals == 0 else round(sample, decimals)
    return f"Random number between {low} and {high}: {value}"


def _title_case(text: str) -> str:
    return re.sub(r"\w\S*", lambda match: match.group(0)[0].upper() + match.group(0)[1:].lower(), text)


_TEXT_OPERATIONS: dict[str, Callable[[str], str]] = {
    "uppercase": str.upper,
    "lowercase": str.lower,
    "reverse": lambda text: text[::-1],
    "word_count": lambda text: f"Word count: {len(text.split())}",
    "char_count": lambda text: f"Character count: {len(text)}",
    "title_case": _title_case,
    "remove_spaces": lambda text: re.sub(r"\s+", "", text),
    "add_spaces": lambda text: " ".join(text),
}


def text_transform(args: Mapping[str, Any]) -> str:
    operation = args["operation"]
    result = _TEXT_OPERATIONS[operation](args["text"])
    return f"{operation.replace('_', ' ', 1).upper()}: {result}"


def _random_color(fmt: str) -> str:
    if fmt == "hsl":
        return f"hsl({random.randrange(360)}, {random.randrange(100)}%, {random.randrange(100)}%)"
    r, g, b = (random.randrange(256) for _ in range(3))
    if fmt == "rgb":
        return f"rgb({r}, {g}, {b})"
    return f"#{r:02x}{g:02x}{b:02x}"


def generate_color(args: Mapping[str, Any]) -> str:
    fmt = args.get("format", "hex")
    count = args.get("count", 1)
    colors = [_random_color(fmt) for _ in range(count)]
    plural = "s" if count > 1 else ""
    return f"Generated {count} {fmt.upper()} color{plural}: {', '.join(colors)}"


def generate_uuid(args: Mapping[str, Any]) -> str:
    count = args.get("count", 1)
    values = [str(uuid.uuid4()) for _ in range(count)]
    plural = "s" if count > 1 else ""
    return f"Generated UUID{plural}: " + "\n".join(values)


def generate_password(args: Mapping[str, Any]) -> str:
    charset = ""
    if args.get("includeLowercase", True):
        charset += "abcdefghijklmnopqrstuvwxyz"
    if args.get("includeUppercase", True):
        charset += "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    if args.get("includeNumbers", True):
        charset += "0123456789"
    if args.get("includeSymbols", True):
        charset += _PASSWORD_SYMBOLS
    if not charset:
        raise _invalid("At least one character type must be selected")
    length = args.get("length", 16)
    password = "".join(secrets.choice(charset) for _ in range(length))
    return f"Generated password: {password}"


def default_builtins() -> tuple[BuiltinTool, ...]:
    """Return the stateless utility tools."""

    return (
        BuiltinTool(
            _builtin("url_validator", "Validate and analyze URLs", {"url": _param("string", "URL to validate and analyze")}, ("url",)),
            url_validator,
        ),
        BuiltinTool(
            _builtin(
                "json_formatter",
                "Format, validate and minify JSON",
                {
                    "json": _param("string", "JSON string to format or validate"),
                    "action": _param("string", "Action to perform", enum=("format", "minify", "validate"), default="format"),
                },
                ("json",),
            ),
            json_formatter,
        ),
        BuiltinTool(
            _builtin(
                "base64_converter",
                "Encode or decode Base64 strings",
                {
                    "text": _param("string", "Text to encode/decode"),
                    "action": _param("string", "Whether to encode or decode", enum=("encode", "decode")),
                },
                ("text", "action"),
            ),
            base64_converter,
        ),
        BuiltinTool(
            _builtin(
                "hash_generator",
                "Generate various hash types for text",
                {
                    "text": _param("string", "Text to hash"),
                    "algorithm": _param("string", "Hash algorithm", enum=("md5", "sha1", "sha256", "sha512"), default="sha256"),
                },
                ("text",),
            ),
            hash_generator,
        ),
        BuiltinTool(
            _builtin(
                "timestamp_converter",
                "Convert between timestamps and human-readable dates",
                {
                    "input": _param("string", "Timestamp (unix/iso) or date string to convert"),
                    "timezone": _param("string", "Timezone for conversion (e.g., 'America/New_York', 'UTC')", default="UTC"),
                },
                ("input",),
            ),
            timestamp_converter,
        ),
        BuiltinTool(
            _builtin(
                "qr_code_data",
                "Generate QR code data and URL for text",
                {
                    "text": _param("string", "Text to encode in QR code"),
                    "size": _param("integer", "QR code size in pixels", minimum=100, maximum=500, default=200),
                },
                ("text",),
            ),
            qr_code_data,
        ),
        BuiltinTool(
            _builtin(
                "email_validator",
                "Validate email addresses and extract information",
                {"email": _param("string", "Email address to validate")},
                ("email",),
            ),
            email_validator,
        ),
        BuiltinTool(
            _builtin(
                "slug_generator",
                "Generate URL-friendly slugs from text",
                {
                    "text": _param("string", "Text to convert to slug"),
                    "separator": _param("string", "Separator character", enum=("-", "_"), default="-"),
                    "maxLength": _param("integer", "Maximum slug length", minimum=10, maximum=200, default=100),
                },
                ("text",),
            ),
            slug_generator,
        ),
        BuiltinTool(
            _builtin(
                "random_number",
                "Generate a random number within a specified range",
                {
                    "min": _param("number", "Minimum value (inclusive)"),
                    "max": _param("number", "Maximum value (inclusive)"),
                    "decimals": _param("integer", "Number of decimal places", minimum=0, maximum=10, default=0),
                },
                ("min", "max"),
            ),
            random_number,
        ),
        BuiltinTool(
            _builtin(
                "text_transform",
                "Transform text with various operations",
                {
                    "text": _param("string", "The text to transform"),
                    "operation": _param("string", "The transformation to apply", enum=tuple(_TEXT_OPERATIONS)),
                },
                ("text", "operation"),
            ),
            text_transform,
        ),
        BuiltinTool(
            _builtin(
                "generate_color",
                "Generate random colors in various formats",
                {
                    "format": _param("string", "Color format", enum=("hex", "rgb", "hsl"), default="hex"),
                    "count": _param("integer", "Number of colors to generate", minimum=1, maximum=10, default=1),
                },
            ),
            generate_color,
        ),
        BuiltinTool(
            _builtin(
                "generate_uuid",
                "Generate UUIDs (v4)",
                {"count": _param("integer", "Number of UUIDs to generate", minimum=1, maximum=10, default=1)},
            ),
            generate_uuid,
        ),
        BuiltinTool(
            _builtin(
                "generate_password",
                "Generate secure passwords",
                {
                    "length": _param("integer", "Password length", minimum=4, maximum=128, default=16),
                    "includeNumbers": _param("boolean", "Include numbers", default=True),
                    "includeSymbols": _param("boolean", "Include symbols", default=True),
                    "includeUppercase": _param("boolean", "Include uppercase letters", default=True),
                    "includeLowercase": _param("boolean", "Include lowercase letters", default=True),
                },
            ),
            generate_password,
        ),
    )


def refresh_registry_tool(cache: "RegistryCache") -> BuiltinTool:
    """Builtin that reloads custom tools from the store and reports what was loaded."""

    async def handler(_args: Mapping[str, Any]) -> str:
        snapshot = await cache.ensure_fresh()
        if cache.last_refresh_error is not None:
            return (
                f"Registry refresh failed: {cache.last_refresh_error}\n"
                f"Serving {len(snapshot.descriptors)} previously loaded custom tool(s)."
            )
        if not snapshot.descriptors:
            return "Registry refreshed: no custom tools defined."
        lines = [f"Registry refreshed: {len(snapshot.descriptors)} custom tool(s) loaded."]
        for descriptor in snapshot.descriptors:
            label = "api" if descriptor.kind == "api" else "script"
            reason = snapshot.failures.get(descriptor.name)
            suffix = f" (unavailable: {reason})" if reason else ""
            lines.append(f"- {descriptor.name} [{label}]{suffix}")
        return "\n".join(lines)

    return BuiltinTool(
        descriptor=_builtin("refresh_registry", "Reload custom tool definitions from the tool store", {}),
        handler=handler,
        refreshes_registry=True,
    )
