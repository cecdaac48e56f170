"""
Configuration validation for production safety.

- Range checks for numeric parameters
- Credential and endpoint checks
- Warnings for risky but legal configurations
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger("rangepilot")


class ValidationSeverity(Enum):
    ERROR = auto()    # Blocks startup
    WARNING = auto()  # Logs warning but allows startup
    INFO = auto()


@dataclass
class ValidationIssue:
    field: str
    message: str
    severity: ValidationSeverity
    value: Any = None
    suggestion: Optional[str] = None


@dataclass
class ValidationResult:
    valid: bool
    issues: List[ValidationIssue] = field(default_factory=list)

    def has_errors(self) -> bool:
        return any(i.severity == ValidationSeverity.ERROR for i in self.issues)

    def has_warnings(self) -> bool:
        return any(i.severity == ValidationSeverity.WARNING for i in self.issues)

    def get_errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.ERROR]

    def get_warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == ValidationSeverity.WARNING]


class ConfigValidator:
    """
    Validates Settings before any component is built.

    Custom checks can be added with register_validator(); each receives the
    settings and returns a list of issues.
    """

    # (min, max)
    NUMERIC_RANGES: Dict[str, Tuple[float, float]] = {
        "rpc_timeout_sec": (0.5, 120.0),
        "rpc_max_retries": (1, 20),
        "health_check_interval_sec": (1.0, 3600.0),
        "health_probe_timeout_sec": (0.5, 60.0),
        "monitor_poll_ms": (100, 600_000),
        "retry_initial_ms": (1, 600_000),
        "retry_max_attempts": (1, 50),
        "retry_multiplier": (1.0, 10.0),
        "retry_max_delay_ms": (1, 3_600_000),
        "backup_keep": (1, 1000),
        "exit_sell_ratio": (0.5, 1.0),
        "dust_threshold": (0.0, 1.0),
        "min_base_balance": (0.0, 1_000_000_000.0),
        "metrics_port": (0, 65535),
    }

    def __init__(self) -> None:
        self._custom_validators: List[Callable[[Any], List[ValidationIssue]]] = []

    def register_validator(self, validator: Callable[[Any], List[ValidationIssue]]) -> None:
        self._custom_validators.append(validator)

    def validate(self, cfg) -> ValidationResult:
        issues: List[ValidationIssue] = []
        issues.extend(self._validate_numeric_ranges(cfg))
        issues.extend(self._validate_endpoints(cfg))
        issues.extend(self._validate_credentials(cfg))
        issues.extend(self._check_risky_configs(cfg))

        for validator in self._custom_validators:
            try:
                custom_issues = validator(cfg)
            except Exception as exc:
                logger.warning(f"Custom validator error: {exc}")
                continue
            if custom_issues:
                issues.extend(custom_issues)

        has_errors = any(i.severity == ValidationSeverity.ERROR for i in issues)
        return ValidationResult(valid=not has_errors, issues=issues)

    def _validate_numeric_ranges(self, cfg) -> List[ValidationIssue]:
        issues = []
        for field_name, (min_val, max_val) in self.NUMERIC_RANGES.items():
            value = getattr(cfg, field_name, None)
            if value is None:
                continue
            try:
                num_value = float(value)
            except (TypeError, ValueError):
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' has invalid numeric value: {value}",
                    severity=ValidationSeverity.ERROR,
                    value=value,
                ))
                continue
            if num_value < min_val:
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' value {num_value} is below minimum {min_val}",
                    severity=ValidationSeverity.ERROR,
                    value=num_value,
                    suggestion=f"Set to at least {min_val}",
                ))
            elif num_value > max_val:
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' value {num_value} is above maximum {max_val}",
                    severity=ValidationSeverity.ERROR,
                    value=num_value,
                    suggestion=f"Set to at most {max_val}",
                ))
        return issues

    def _validate_endpoints(self, cfg) -> List[ValidationIssue]:
        issues = []
        urls = getattr(cfg, "rpc_urls", None) or []
        if not urls:
            issues.append(ValidationIssue(
                field="rpc_urls",
                message="No RPC endpoints configured",
                severity=ValidationSeverity.ERROR,
                suggestion="Set LP_RPC_URLS",
            ))
            return issues

        seen = set()
        for item in urls:
            url = item.partition("|")[2] or item
            if url in seen:
                issues.append(ValidationIssue(
                    field="rpc_urls",
                    message=f"Duplicate RPC endpoint {url}",
                    severity=ValidationSeverity.WARNING,
                    value=url,
                ))
            seen.add(url)
            if url.startswith("http://"):
                issues.append(ValidationIssue(
                    field="rpc_urls",
                    message=f"RPC endpoint {url} is not using TLS",
                    severity=ValidationSeverity.WARNING,
                    value=url,
                ))

        if len(urls) == 1:
            issues.append(ValidationIssue(
                field="rpc_urls",
                message="Single RPC endpoint; failover is disabled in practice",
                severity=ValidationSeverity.WARNING,
                suggestion="List a backup endpoint in LP_RPC_URLS",
            ))
        return issues

    def _validate_credentials(self, cfg) -> List[ValidationIssue]:
        key = getattr(cfg, "private_key", None)
        if not key:
            return [ValidationIssue(
                field="private_key",
                message="No signing key configured; transactions cannot be sent",
                severity=ValidationSeverity.ERROR,
                suggestion="Set LP_PRIVATE_KEY",
            )]
        body = key[2:] if key.startswith("0x") else key
        if len(body) != 64:
            return [ValidationIssue(
                field="private_key",
                message="LP_PRIVATE_KEY must be 32 bytes of hex",
                severity=ValidationSeverity.ERROR,
            )]
        return []

    def _check_risky_configs(self, cfg) -> List[ValidationIssue]:
        issues = []

        if getattr(cfg, "metrics_port", 0) and not getattr(cfg, "metrics_token", None):
            issues.append(ValidationIssue(
                field="metrics_token",
                message="Metrics server has no auth token; /metrics and /status are public",
                severity=ValidationSeverity.WARNING,
                suggestion="Set LP_METRICS_TOKEN",
            ))

        attempts = getattr(cfg, "retry_max_attempts", 5)
        if attempts < 3:
            issues.append(ValidationIssue(
                field="retry_max_attempts",
                message=f"Only {attempts} position-creation attempt(s); transient failures will end runs",
                severity=ValidationSeverity.WARNING,
                value=attempts,
            ))

        if not getattr(cfg, "collaborators", None):
            issues.append(ValidationIssue(
                field="collaborators",
                message="No collaborator factory configured; strategies cannot be started",
                severity=ValidationSeverity.ERROR,
                suggestion="Set LP_COLLABORATORS=module:factory",
            ))
        return issues


def validate_config(cfg) -> ValidationResult:
    return ConfigValidator().validate(cfg)


def validate_and_log(cfg, logger_instance=None) -> bool:
    """
    Validate config and log all issues.

    Returns:
        True if config is valid (no errors), False otherwise
    """
    log = logger_instance or logger
    result = validate_config(cfg)

    for issue in result.get_errors():
        msg = f"CONFIG ERROR: {issue.message}"
        if issue.suggestion:
            msg += f" (suggestion: {issue.suggestion})"
        log.error(msg)

    for issue in result.get_warnings():
        msg = f"CONFIG WARNING: {issue.message}"
        if issue.suggestion:
            msg += f" (suggestion: {issue.suggestion})"
        log.warning(msg)

    for issue in result.issues:
        if issue.severity == ValidationSeverity.INFO:
            log.info(f"CONFIG NOTE: {issue.message}")

    if result.valid:
        log.info("Configuration validation passed")
    else:
        log.error(f"Configuration validation failed with {len(result.get_errors())} error(s)")
    return result.valid
