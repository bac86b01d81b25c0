"""Network-aware enrichment of flow entries."""

from __future__ import annotations

import functools
import ipaddress
import logging
import math
import re
import socket
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from flowlogs2metrics.connection_tracking import ConnectionTracking, init_connection_tracking
from flowlogs2metrics.kubernetes import KubeData

_log = logging.getLogger(__name__)

RULE_CONN_TRACKING = "conn_tracking"
RULE_ADD_REGEX_IF = "add_regex_if"
RULE_ADD_IF = "add_if"
RULE_ADD_SUBNET = "add_subnet"
RULE_ADD_LOCATION = "add_location"
RULE_ADD_SERVICE = "add_service"
RULE_ADD_KUBERNETES = "add_kubernetes"

_ATOI = re.compile(r"[+-]?[0-9]+")

_DEFAULT_PROTOCOLS = {
    0: "ip", 1: "icmp", 2: "igmp", 6: "tcp", 17: "udp", 41: "ipv6",
    47: "gre", 50: "esp", 51: "ah", 58: "ipv6-icmp", 132: "sctp", 136: "udplite",
}

_WELL_KNOWN_SERVICES = {
    (20, "tcp"): "ftp-data", (21, "tcp"): "ftp", (22, "tcp"): "ssh",
    (23, "tcp"): "telnet", (25, "tcp"): "smtp", (53, "tcp"): "domain",
    (53, "udp"): "domain", (80, "tcp"): "http", (110, "tcp"): "pop3",
    (123, "udp"): "ntp", (143, "tcp"): "imap2", (161, "udp"): "snmp",
    (443, "tcp"): "https", (443, "udp"): "https",
}


def _lower_keys(data: Mapping[str, Any]) -> dict[str, Any]:
    return {str(key).lower(): value for key, value in data.items()}


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _format_v(value: Any) -> str:
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if value.is_integer() and abs(value) < 1e21:
            return str(int(value))
        return repr(value)
    if isinstance(value, Mapping):
        items = " ".join(
            f"{_format_v(k)}:{_format_v(value[k])}" for k in sorted(value, key=str)
        )
        return f"map[{items}]"
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(_format_v(item) for item in value) + "]"
    return str(value)


def _format_s(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    if value is None:
        return "%!s(<nil>)"
    if isinstance(value, bool):
        return f"%!s(bool={_format_v(value)})"
    if isinstance(value, int):
        return f"%!s(int={value})"
    if isinstance(value, float):
        return f"%!s(float64={_format_v(value)})"
    return _format_v(value)


@dataclass(frozen=True)
class NetworkTransformRule:
    """One enrichment rule."""

    input: str = ""
    output: str = ""
    type: str = ""
    parameters: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> NetworkTransformRule:
        """Build a rule from a mapping with case-insensitive keys."""
        lowered = _lower_keys(data)
        return cls(
            input=_text(lowered.get("input")),
            output=_text(lowered.get("output")),
            type=_text(lowered.get("type")),
            parameters=_text(lowered.get("parameters")),
        )


_TEMPLATE_ACTION = re.compile(r"\{\{(.*?)\}\}", re.S)
_TEMPLATE_FIELD = re.compile(r"\.([A-Za-z_]\w*)")


def render_template(template: str, entry: Mapping[str, Any]) -> str:
    """Substitute ``{{.field}}`` actions with values from ``entry``."""
    parts = []
    position = 0
    for match in _TEMPLATE_ACTION.finditer(template):
        parts.append(template[position:match.start()])
        action = match.group(1).strip()
        if action == ".":
            parts.append(_format_v(entry))
        else:
            field_match = _TEMPLATE_FIELD.fullmatch(action)
            if field_match is None:
                raise ValueError(f"unsupported template action {{{{{action}}}}}")
            key = field_match.group(1)
            parts.append(_format_v(entry[key]) if key in entry else "<no value>")
        position = match.end()
    rest = template[position:]
    if "{{" in rest:
        raise ValueError("unclosed action in template")
    parts.append(rest)
    return "".join(parts)


_LEXEME_PATTERN = re.compile(
    r"""\s*(?:
        (?P<number>\d+(?:\.\d*)?|\.\d+)
      | (?P<string>'[^']*'|"[^"]*")
      | (?P<op>==|!=|>=|<=|=~|!~|&&|\|\||[-+*/%<>!()])
      | (?P<name>[A-Za-z_][\w.]*)
    )""",
    re.X,
)

_COMPARATORS = ("==", "!=", ">", "<", ">=", "<=", "=~", "!~")


def _lex(text: str) -> list[tuple[str, str]]:
    lexemes = []
    position = 0
    while position < len(text):
        if text[position:].isspace():
            break
        match = _LEXEME_PATTERN.match(text, position)
        if match is None:
            raise ValueError(f"invalid input at {text[position:]!r}")
        kind = match.lastgroup
        lexemes.append((kind, match.group(kind)))
        position = match.end()
    return lexemes


class _Parser:
    def __init__(self, text: str) -> None:
        self.lexemes = _lex(text)
        self.position = 0

    def _peek_op(self, *ops: str) -> str | None:
        if self.position < len(self.lexemes):
            kind, value = self.lexemes[self.position]
            if kind == "op" and value in ops:
                return value
        return None

    def _take(self) -> tuple[str, str]:
        if self.position >= len(self.lexemes):
            raise ValueError("unexpected end of expression")
        lexeme = self.lexemes[self.position]
        self.position += 1
        return lexeme

    def parse(self) -> Any:
        if not self.lexemes:
            raise ValueError("empty expression")
        result = self._or()
        if self.position != len(self.lexemes):
            raise ValueError(f"unexpected input {self.lexemes[self.position][1]!r}")
        return result

    def _logical(self, op: str, operand) -> Any:
        left = operand()
        while self._peek_op(op):
            self._take()
            right = operand()
            if not isinstance(left, bool) or not isinstance(right, bool):
                raise ValueError(f"operator {op} needs booleans")
            left = (left or right) if op == "||" else (left and right)
        return left

    def _or(self) -> Any:
        return self._logical("||", self._and)

    def _and(self) -> Any:
        return self._logical("&&", self._comparison)

    def _comparison(self) -> Any:
        left = self._additive()
        while (op := self._peek_op(*_COMPARATORS)) is not None:
            self._take()
            left = _compare(op, left, self._additive())
        return left

    def _additive(self) -> Any:
        left = self._multiplicative()
        while (op := self._peek_op("+", "-")) is not None:
            self._take()
            right = self._multiplicative()
            if op == "+" and isinstance(left, str) and isinstance(right, str):
                left = left + right
            else:
                _require_numbers(op, left, right)
                left = left + right if op == "+" else left - right
        return left

    def _multiplicative(self) -> Any:
        left = self._unary()
        while (op := self._peek_op("*", "/", "%")) is not None:
            self._take()
            right = self._unary()
            _require_numbers(op, left, right)
            if op == "*":
                left = left * right
            elif op == "/":
                left = left / right if right else (math.copysign(math.inf, left) if left else math.nan)
            else:
                left = math.fmod(left, right) if right else math.nan
        return left

    def _unary(self) -> Any:
        op = self._peek_op("-", "!")
        if op is None:
            return self._primary()
        self._take()
        value = self._unary()
        if op == "-":
            _require_numbers(op, value, 0.0)
            return -value
        if not isinstance(value, bool):
            raise ValueError("operator ! needs a boolean")
        return not value

    def _primary(self) -> Any:
        kind, value = self._take()
        if kind == "number":
            return float(value)
        if kind == "string":
            return value[1:-1]
        if kind == "name":
            if value == "true":
                return True
            if value == "false":
                return False
            raise ValueError(f"no parameter {value!r} found")
        if value == "(":
            result = self._or()
            if not self._peek_op(")"):
                raise ValueError("unbalanced parenthesis")
            self._take()
            return result
        raise ValueError(f"unexpected input {value!r}")


def _require_numbers(op: str, left: Any, right: Any) -> None:
    if not isinstance(left, float) or not isinstance(right, float):
        raise ValueError(f"operator {op} needs numbers")


def _compare(op: str, left: Any, right: Any) -> bool:
    if op in ("==", "!="):
        equal = type(left) is type(right) and left == right
        return equal if op == "==" else not equal
    if op in ("=~", "!~"):
        if not isinstance(left, str) or not isinstance(right, str):
            raise ValueError(f"operator {op} needs strings")
        try:
            matched = re.search(right, left) is not None
        except re.error as err:
            raise ValueError(f"invalid pattern {right!r}: {err}") from err
        return matched if op == "=~" else not matched
    if not (
        (isinstance(left, float) and isinstance(right, float))
        or (isinstance(left, str) and isinstance(right, str))
    ):
        raise ValueError(f"operator {op} needs two numbers or two strings")
    return {">": left > right, "<": left < right, ">=": left >= right, "<=": left <= right}[op]


def evaluate_condition(value: str, expression: str) -> bool:
    """Evaluate ``value`` followed by ``expression``; True only for a true boolean.

    Raises ValueError if the combined text is not a valid expression.
    """
    return _Parser(f"{value}{expression}").parse() is True


def _parse_cidr(text: str) -> ipaddress.IPv4Network | ipaddress.IPv6Network:
    address, separator, prefix = text.partition("/")
    if not separator or not prefix.isascii() or not prefix.isdigit():
        raise ValueError(f"invalid CIDR address: {text}")
    ip = _canonical_ip(address)
    return ipaddress.ip_network(f"{ip}/{int(prefix)}", strict=False)


def _canonical_ip(text: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address:
    if "%" in text:
        raise ValueError(f"invalid IP address: {text}")
    return ipaddress.ip_address(text)


@functools.lru_cache(maxsize=1)
def _protocols() -> dict[int, str]:
    protocols = dict(_DEFAULT_PROTOCOLS)
    try:
        with open("/etc/protocols", encoding="utf-8", errors="replace") as handle:
            for line in handle:
                fields = line.split("#", 1)[0].split()
                if len(fields) >= 2 and fields[1].isdigit():
                    protocols.setdefault(int(fields[1]), fields[0])
    except OSError:
        pass
    return protocols


def _service_name(port: int, protocol: str) -> str | None:
    if not protocol or not 0 <= port <= 65535:
        return None
    try:
        return socket.getservbyport(port, protocol)
    except (OSError, OverflowError, ValueError):
        return _WELL_KNOWN_SERVICES.get((port, protocol))


class Network:
    """Apply network enrichment rules to flow entries, in order."""

    def __init__(
        self,
        rules: Iterable[NetworkTransformRule | Mapping[str, Any]],
        kube_data: KubeData | None = None,
        tracker: ConnectionTracking | None = None,
    ) -> None:
        self.rules = [
            rule if isinstance(rule, NetworkTransformRule) else NetworkTransformRule.from_mapping(rule)
            for rule in rules
        ]
        self.kube_data = kube_data
        if tracker is None and any(rule.type == RULE_CONN_TRACKING for rule in self.rules):
            tracker = ConnectionTracking()
        self.tracker = tracker

    def transform(self, entry: dict[str, Any]) -> dict[str, Any]:
        """Enrich ``entry`` in place and return it."""
        for rule in self.rules:
            handler = self._handlers.get(rule.type)
            if handler is None:
                raise ValueError(f"unknown type {rule.type} for transform.Network rule: {rule}")
            handler(self, rule, entry)
        return entry

    def _conn_tracking(self, rule: NetworkTransformRule, entry: dict[str, Any]) -> None:
        flow_id = render_template(rule.input, entry)
        if self.tracker.add_flow(flow_id):
            entry[rule.output] = rule.parameters if rule.parameters else True

    def _add_regex_if(self, rule: NetworkTransformRule, entry: dict[str, Any]) -> None:
        try:
            matched = re.search(rule.parameters, _format_s(entry.get(rule.input))) is not None
        except re.error:
            return
        if matched:
            entry[rule.output] = entry.get(rule.input)
            entry[rule.output + "_Matched"] = True

    def _add_if(self, rule: NetworkTransformRule, entry: dict[str, Any]) -> None:
        try:
            result = evaluate_condition(_format_s(entry.get(rule.input)), rule.parameters)
        except ValueError:
            return
        if result:
            entry[rule.output] = entry.get(rule.input)
            entry[rule.output + "_Evaluate"] = True

    def _add_subnet(self, rule: NetworkTransformRule, entry: dict[str, Any]) -> None:
        value = entry.get(rule.input)
        try:
            network = _parse_cidr(f"{_format_v(value)}{rule.parameters}")
        except ValueError as err:
            _log.error(
                "Can't find subnet for IP %s and prefix length %s - err %s",
                _format_v(value), rule.parameters, err,
            )
            return
        entry[rule.output] = str(network)

    def _add_location(self, rule: NetworkTransformRule, entry: dict[str, Any]) -> None:
        _log.error(
            "Can't find location for IP %s err no location DB available",
            _format_v(entry.get(rule.input)),
        )

    def _add_service(self, rule: NetworkTransformRule, entry: dict[str, Any]) -> None:
        protocol = _format_v(entry.get(rule.parameters))
        port_text = _format_v(entry.get(rule.input))
        if not _ATOI.fullmatch(port_text):
            _log.error("Can't convert port to int: Port %s", port_text)
            return
        port = int(port_text)
        name = _service_name(port, protocol)
        if name is None:
            if not _ATOI.fullmatch(protocol):
                _log.info("Can't find service name for Port %s and protocol %s", port_text, protocol)
                return
            protocol_name = _protocols().get(int(protocol))
            name = _service_name(port, protocol_name) if protocol_name else None
            if name is None:
                _log.info("Can't find service name for Port %s and protocol %s", port_text, protocol)
                return
        entry[rule.output] = name

    def _add_kubernetes(self, rule: NetworkTransformRule, entry: dict[str, Any]) -> None:
        ip = _format_s(entry.get(rule.input))
        if self.kube_data is None:
            _log.info("Can't find kubernetes info for IP %s err no kubernetes data", ip)
            return
        try:
            info = self.kube_data.get_info(ip)
        except LookupError as err:
            _log.info("Can't find kubernetes info for IP %s err %s", ip, err)
            return
        entry[rule.output + "_Namespace"] = info.namespace
        entry[rule.output + "_Name"] = info.name
        entry[rule.output + "_Type"] = info.type
        entry[rule.output + "_OwnerName"] = info.owner.name
        entry[rule.output + "_OwnerType"] = info.owner.type
        if rule.parameters:
            for label_key, label_value in info.labels.items():
                entry[f"{rule.parameters}_{label_key}"] = label_value
        if info.host_ip:
            entry[rule.output + "_HostIP"] = info.host_ip

    _handlers = {
        RULE_CONN_TRACKING: _conn_tracking,
        RULE_ADD_REGEX_IF: _add_regex_if,
        RULE_ADD_IF: _add_if,
        RULE_ADD_SUBNET: _add_subnet,
        RULE_ADD_LOCATION: _add_location,
        RULE_ADD_SERVICE: _add_service,
        RULE_ADD_KUBERNETES: _add_kubernetes,
    }


def new_transform_network(config: Mapping[str, Any], kube_data: KubeData | None = None) -> Network:
    """Create a network transformer from its configuration mapping.

    Rules of type ``add_kubernetes`` need ``kube_data``; RuntimeError is raised
    without it.
    """
    lowered = _lower_keys(config or {})
    rules = [NetworkTransformRule.from_mapping(item) for item in lowered.get("rules") or []]
    types = {rule.type for rule in rules}

    tracker = init_connection_tracking() if RULE_CONN_TRACKING in types else None
    if RULE_ADD_LOCATION in types:
        _log.debug("no location database available; location rules will be skipped")
    if RULE_ADD_KUBERNETES in types and kube_data is None:
        raise RuntimeError("can't access kubernetes: no cluster data was provided")

    return Network(rules, kube_data, tracker)