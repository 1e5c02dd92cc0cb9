"""Platform descriptions and evaluation of platform-conditional dependencies.

A dependency may be restricted to some platforms with a ``target`` entry such
as ``cfg(unix)`` or ``x86_64-pc-windows-msvc``. The graph stores those
conditions as opaque strings inside a PlatformStatus; only a PlatformEvaluator
interprets them. CfgEvaluator is the evaluator used when callers don't supply
their own.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field, replace
from functools import lru_cache
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class EnabledTernary(enum.Enum):
    """Three-valued (Kleene) result of evaluating a condition."""

    DISABLED = 0
    UNKNOWN = 1
    ENABLED = 2

    @classmethod
    def from_bool(cls, value: bool) -> EnabledTernary:
        return cls.ENABLED if value else cls.DISABLED

    def __or__(self, other: EnabledTernary) -> EnabledTernary:
        return EnabledTernary(max(self.value, other.value))

    def __and__(self, other: EnabledTernary) -> EnabledTernary:
        return EnabledTernary(min(self.value, other.value))

    def __invert__(self) -> EnabledTernary:
        return EnabledTernary(2 - self.value)

    def is_possible(self) -> bool:
        """True unless definitely disabled."""
        return self is not EnabledTernary.DISABLED


@dataclass(frozen=True)
class Platform:
    """
    A platform to evaluate conditions against.

    Args:
        triple: Target triple, e.g. ``x86_64-unknown-linux-gnu``.
        target_features: Enabled CPU target features. None means they are not
            known, so ``target_feature = "..."`` evaluates to UNKNOWN.
        flags: Bare cfg flags that are set (``cfg(test)``, ``cfg(tokio_unstable)``).
            Flags not listed evaluate to false.
        features: Cargo features of the package whose dependency is being
            evaluated (``cfg(feature = "...")``). None means not known.
    """

    triple: str
    target_features: frozenset[str] | None = None
    flags: frozenset[str] = field(default_factory=frozenset)
    features: frozenset[str] | None = None

    def with_features(self, features: frozenset[str] | set[str]) -> Platform:
        return replace(self, features=frozenset(features))

    def to_dict(self) -> dict:
        return {
            "triple": self.triple,
            "target_features": (
                sorted(self.target_features) if self.target_features is not None else None
            ),
            "flags": sorted(self.flags),
        }


@runtime_checkable
class PlatformEvaluator(Protocol):
    """Interprets platform conditions. The only place cfg syntax is understood."""

    def evaluate(self, condition: str, platform: Platform) -> EnabledTernary: ...

    def references_features(self, condition: str) -> bool: ...


@dataclass(frozen=True)
class PlatformStatus:
    """
    The set of platforms a dependency instance applies to.

    ``always`` means unconditional; otherwise the status applies wherever any
    of ``conditions`` holds. No conditions and not always means never.
    """

    always: bool = False
    conditions: tuple[str, ...] = ()

    @classmethod
    def never(cls) -> PlatformStatus:
        return _NEVER

    @classmethod
    def for_target(cls, target: str | None) -> PlatformStatus:
        if target is None:
            return _ALWAYS
        return cls(False, (target,))

    def is_never(self) -> bool:
        return not self.always and not self.conditions

    def is_always(self) -> bool:
        return self.always

    def is_present(self) -> bool:
        return not self.is_never()

    def merge(self, other: PlatformStatus) -> PlatformStatus:
        if self.always or other.always:
            return _ALWAYS
        if not other.conditions:
            return self
        merged = self.conditions + tuple(c for c in other.conditions if c not in self.conditions)
        return PlatformStatus(False, merged)

    def evaluate(
        self,
        platform: Platform | None,
        evaluator: PlatformEvaluator,
    ) -> EnabledTernary:
        """Evaluate on a platform; None stands for "any platform"."""
        if self.always:
            return EnabledTernary.ENABLED
        if not self.conditions:
            return EnabledTernary.DISABLED
        if platform is None:
            return EnabledTernary.ENABLED
        result = EnabledTernary.DISABLED
        for condition in self.conditions:
            result = result | evaluator.evaluate(condition, platform)
            if result is EnabledTernary.ENABLED:
                break
        return result

    def to_dict(self) -> dict | str:
        if self.always:
            return "always"
        if not self.conditions:
            return "never"
        return {"conditions": list(self.conditions)}


_ALWAYS = PlatformStatus(True, ())
_NEVER = PlatformStatus(False, ())


@dataclass(frozen=True)
class EnabledStatus:
    """Platforms on which a dependency is required, and on which it is optional."""

    required: PlatformStatus = _NEVER
    optional: PlatformStatus = _NEVER

    def is_never(self) -> bool:
        return self.required.is_never() and self.optional.is_never()

    def is_present(self) -> bool:
        return not self.is_never()

    def required_on(
        self, platform: Platform | None, evaluator: PlatformEvaluator
    ) -> EnabledTernary:
        return self.required.evaluate(platform, evaluator)

    def enabled_on(
        self, platform: Platform | None, evaluator: PlatformEvaluator
    ) -> EnabledTernary:
        required = self.required.evaluate(platform, evaluator)
        if required is EnabledTernary.ENABLED:
            return required
        return required | self.optional.evaluate(platform, evaluator)

    def required_on_any(self) -> bool:
        return self.required.is_present()

    def enabled_on_any(self) -> bool:
        return self.is_present()


# --- cfg expressions ---------------------------------------------------------

_TOKEN_RE = re.compile(r'\s*(?:(?P<ident>[A-Za-z_][A-Za-z0-9_]*)|(?P<str>"[^"]*")|(?P<punct>[(),=]))')

# Parsed expression nodes are tuples:
#   ("all", [..]) / ("any", [..]) / ("not", node) / ("kv", key, value) / ("flag", name)
#   ("triple", triple)


class CfgSyntaxError(ValueError):
    pass


def _tokenize(text: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if m is None or m.end() == pos:
            raise CfgSyntaxError(f"unexpected character at {pos} in {text!r}")
        pos = m.end()
        if m.group("ident") is not None:
            tokens.append(("ident", m.group("ident")))
        elif m.group("str") is not None:
            tokens.append(("str", m.group("str")[1:-1]))
        else:
            tokens.append(("punct", m.group("punct")))
    return tokens


class _Parser:
    def __init__(self, tokens: list[tuple[str, str]]) -> None:
        self.tokens = tokens
        self.pos = 0

    def peek(self) -> tuple[str, str] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def expect(self, kind: str, value: str | None = None) -> str:
        tok = self.peek()
        if tok is None or tok[0] != kind or (value is not None and tok[1] != value):
            raise CfgSyntaxError(f"expected {value or kind}, found {tok}")
        self.pos += 1
        return tok[1]

    def parse_predicate(self) -> tuple:
        name = self.expect("ident")
        tok = self.peek()
        if name in ("all", "any") and tok == ("punct", "("):
            self.pos += 1
            items = []
            while self.peek() != ("punct", ")"):
                items.append(self.parse_predicate())
                if self.peek() == ("punct", ","):
                    self.pos += 1
                elif self.peek() != ("punct", ")"):
                    raise CfgSyntaxError(f"expected ',' or ')' in {name}()")
            self.expect("punct", ")")
            return (name, items)
        if name == "not" and tok == ("punct", "("):
            self.pos += 1
            inner = self.parse_predicate()
            self.expect("punct", ")")
            return ("not", inner)
        if tok == ("punct", "="):
            self.pos += 1
            return ("kv", name, self.expect("str"))
        return ("flag", name)


@lru_cache(maxsize=1024)
def parse_condition(text: str) -> tuple:
    """Parse ``cfg(...)`` or a bare target triple into an expression tree."""
    stripped = text.strip()
    if not stripped.startswith("cfg("):
        if not stripped or any(ch.isspace() for ch in stripped):
            raise CfgSyntaxError(f"invalid target triple {text!r}")
        return ("triple", stripped)
    if not stripped.endswith(")"):
        raise CfgSyntaxError(f"unterminated cfg expression {text!r}")
    parser = _Parser(_tokenize(stripped[4:-1]))
    node = parser.parse_predicate()
    if parser.peek() is not None:
        raise CfgSyntaxError(f"trailing tokens in {text!r}")
    return node


def _mentions_feature(node: tuple) -> bool:
    op = node[0]
    if op in ("all", "any"):
        return any(_mentions_feature(n) for n in node[1])
    if op == "not":
        return _mentions_feature(node[1])
    return op == "kv" and node[1] == "feature"


# Architecture prefix -> (target_arch, pointer width, endianness)
_ARCHES: list[tuple[str, str, str, str]] = [
    ("x86_64", "x86_64", "64", "little"),
    ("i686", "x86", "32", "little"),
    ("i586", "x86", "32", "little"),
    ("i386", "x86", "32", "little"),
    ("aarch64_be", "aarch64", "64", "big"),
    ("aarch64", "aarch64", "64", "little"),
    ("arm64", "aarch64", "64", "little"),
    ("armeb", "arm", "32", "big"),
    ("arm", "arm", "32", "little"),
    ("thumb", "arm", "32", "little"),
    ("riscv64", "riscv64", "64", "little"),
    ("riscv32", "riscv32", "32", "little"),
    ("wasm32", "wasm32", "32", "little"),
    ("wasm64", "wasm64", "64", "little"),
    ("powerpc64le", "powerpc64", "64", "little"),
    ("powerpc64", "powerpc64", "64", "big"),
    ("powerpc", "powerpc", "32", "big"),
    ("s390x", "s390x", "64", "big"),
    ("mips64el", "mips64", "64", "little"),
    ("mips64", "mips64", "64", "big"),
    ("mipsel", "mips", "32", "little"),
    ("mips", "mips", "32", "big"),
    ("sparc64", "sparc64", "64", "big"),
    ("loongarch64", "loongarch64", "64", "little"),
]

_UNIX_OSES = {
    "linux", "android", "macos", "ios", "freebsd", "netbsd", "openbsd",
    "dragonfly", "solaris", "illumos", "emscripten", "fuchsia", "haiku",
}


@lru_cache(maxsize=256)
def triple_info(triple: str) -> dict[str, object]:
    """
    Derive cfg keys from a target triple.

    Values that can't be derived are None and make conditions on them
    evaluate to UNKNOWN.
    """
    parts = triple.split("-")
    arch = width = endian = None
    for prefix, a, w, e in _ARCHES:
        if parts[0].startswith(prefix):
            arch, width, endian = a, w, e
            break

    rest = parts[1:]
    os_name: str | None = None
    if "android" in rest or any(p.startswith("android") for p in rest):
        os_name = "android"
    elif "darwin" in rest or "macos" in rest:
        os_name = "macos"
    elif "ios" in rest:
        os_name = "ios"
    elif "windows" in rest:
        os_name = "windows"
    elif "linux" in rest:
        os_name = "linux"
    else:
        for candidate in ("freebsd", "netbsd", "openbsd", "dragonfly", "solaris",
                          "illumos", "wasi", "emscripten", "fuchsia", "haiku", "none"):
            if candidate in rest:
                os_name = candidate
                break
        if os_name is None and rest and rest[-1] == "unknown":
            os_name = "unknown"

    families: set[str] = set()
    if os_name == "windows":
        families.add("windows")
    elif os_name in _UNIX_OSES:
        families.add("unix")
    if arch in ("wasm32", "wasm64"):
        families.add("wasm")

    env = ""
    last = parts[-1] if len(parts) >= 4 or (len(parts) == 3 and os_name is None) else ""
    for e in ("gnu", "musl", "msvc", "sgx", "uclibc"):
        if last.startswith(e):
            env = e
            break

    vendor = parts[1] if len(parts) >= 3 else "unknown"
    if vendor == "apple" and os_name is None:
        os_name = "macos"

    return {
        "target_arch": arch,
        "target_pointer_width": width,
        "target_endian": endian,
        "target_os": os_name,
        "target_vendor": vendor,
        "target_env": env if os_name is not None else None,
        "target_family": frozenset(families) if os_name is not None or families else None,
    }


class CfgEvaluator:
    """Default PlatformEvaluator for ``cfg(...)`` expressions and target triples."""

    def evaluate(self, condition: str, platform: Platform) -> EnabledTernary:
        try:
            node = parse_condition(condition)
        except CfgSyntaxError as e:
            logger.warning("Cannot parse platform condition %r: %s", condition, e)
            return EnabledTernary.UNKNOWN
        return self._eval(node, platform)

    def references_features(self, condition: str) -> bool:
        try:
            return _mentions_feature(parse_condition(condition))
        except CfgSyntaxError:
            return False

    def _eval(self, node: tuple, platform: Platform) -> EnabledTernary:
        op = node[0]
        if op == "triple":
            return EnabledTernary.from_bool(node[1] == platform.triple)
        if op == "all":
            result = EnabledTernary.ENABLED
            for child in node[1]:
                result = result & self._eval(child, platform)
                if result is EnabledTernary.DISABLED:
                    break
            return result
        if op == "any":
            result = EnabledTernary.DISABLED
            for child in node[1]:
                result = result | self._eval(child, platform)
                if result is EnabledTernary.ENABLED:
                    break
            return result
        if op == "not":
            return ~self._eval(node[1], platform)
        if op == "flag":
            return self._eval_flag(node[1], platform)
        return self._eval_key_value(node[1], node[2], platform)

    def _eval_flag(self, name: str, platform: Platform) -> EnabledTernary:
        if name in ("unix", "windows"):
            families = triple_info(platform.triple)["target_family"]
            if families is None:
                return EnabledTernary.UNKNOWN
            return EnabledTernary.from_bool(name in families)
        return EnabledTernary.from_bool(name in platform.flags)

    def _eval_key_value(self, key: str, value: str, platform: Platform) -> EnabledTernary:
        if key == "feature":
            if platform.features is None:
                return EnabledTernary.UNKNOWN
            return EnabledTernary.from_bool(value in platform.features)
        if key == "target_feature":
            if platform.target_features is None:
                return EnabledTernary.UNKNOWN
            return EnabledTernary.from_bool(value in platform.target_features)
        info = triple_info(platform.triple)
        if key not in info:
            return EnabledTernary.from_bool(f"{key}={value}" in platform.flags)
        known = info[key]
        if known is None:
            return EnabledTernary.UNKNOWN
        if isinstance(known, frozenset):
            return EnabledTernary.from_bool(value in known)
        return EnabledTernary.from_bool(known == value)


DEFAULT_EVALUATOR = CfgEvaluator()
