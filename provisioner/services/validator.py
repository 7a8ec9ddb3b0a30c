"""
Validation service for declaration sets
Checks for common issues that would cause provisioning failures
"""

from typing import Dict, Any, List, Optional
import ipaddress
import re

from provisioner.models import Declaration, Stack
from .errors import PolicyViolation
from .interpolation import EXPR, find_references
from .naming import bucket_name
from .planner import SENSITIVE_KEY
from .secret_manager import SecretPolicy
from .service_registry import DEFAULT_REGISTRY, Layer, ServiceRegistry


class DeclarationValidator:
    """Validates declaration sets and returns warnings/errors"""

    # Bucket names that are almost certainly taken in the global S3 namespace
    COMMON_BUCKET_NAMES = [
        "test", "bucket", "mybucket", "testbucket", "data", "files", "backup",
        "backups", "archive", "logs", "assets", "static", "images", "uploads",
    ]

    BUCKET_NAME = re.compile(r"^[a-z0-9][a-z0-9.-]{1,61}[a-z0-9]$")
    DB_IDENTIFIER = re.compile(r"^[a-z][a-z0-9-]{0,62}$")

    def __init__(self, registry: ServiceRegistry = DEFAULT_REGISTRY):
        self.registry = registry

    def validate(self, stack: Stack) -> Dict[str, Any]:
        """
        Validate a stack and return warnings/errors

        Returns:
            {
                "valid": bool,
                "errors": List[str],
                "warnings": List[str],
                "suggestions": List[str]
            }
        """
        errors: List[str] = []
        warnings: List[str] = []
        suggestions: List[str] = []

        declarations = stack.declaration_list()
        by_id = {d.id: d for d in declarations}

        for decl in declarations:
            rtype = self.registry.get_type(decl.type)
            if rtype is None:
                warnings.append(
                    f"Declaration '{decl.id}' has unregistered type '{decl.type}'. "
                    f"It will be provisioned without immutability or required-attribute checks."
                )
            else:
                missing = sorted(k for k in rtype.required if k not in decl.attributes)
                if missing:
                    errors.append(
                        f"Declaration '{decl.id}' ({decl.type}) is missing required attribute(s): "
                        f"{', '.join(missing)}"
                    )

            self._check_credentials(decl, errors, suggestions)
            self._check_layers(decl, by_id, warnings)

            check = getattr(self, "_check_" + decl.type.replace("aws.", "", 1), None)
            if decl.type.startswith("aws.") and check:
                check(decl, stack, by_id, errors, warnings, suggestions)

        return {
            "valid": len(errors) == 0,
            "errors": errors,
            "warnings": warnings,
            "suggestions": suggestions,
        }

    # -------------------- Cross-cutting checks --------------------

    def _check_credentials(self, decl: Declaration, errors: List[str], suggestions: List[str]):
        if self.registry.is_secret(decl.type):
            return
        for key, value in decl.attributes.items():
            if not SENSITIVE_KEY.search(key) or not isinstance(value, str):
                continue
            if EXPR.search(value):
                continue
            errors.append(
                f"Declaration '{decl.id}' sets '{key}' to a plaintext value. "
                f"Credentials must come from an aws.secret declaration."
            )
            suggestions.append(
                f"Declare a secret (e.g. '{decl.id}_{key}': type aws.secret) and set "
                f"{key}: '${{{decl.id}_{key}.reference}}'"
            )

    def _check_layers(self, decl: Declaration, by_id: Dict[str, Declaration], warnings: List[str]):
        rtype = self.registry.get_type(decl.type)
        if rtype is None:
            return
        for ref in sorted(set(decl.references) | find_references(decl.attributes)):
            target = by_id.get(ref)
            ttype = self.registry.get_type(target.type) if target else None
            if ttype is None or ttype.layer == Layer.IDENTITY:
                continue
            if ttype.layer > rtype.layer:
                warnings.append(
                    f"Declaration '{decl.id}' ({rtype.layer.label}) depends on '{ref}' "
                    f"({ttype.layer.label}), which belongs to a later build layer."
                )

    # -------------------- Per-type checks --------------------

    def _cidr(self, decl: Declaration, errors: List[str]) -> Optional[ipaddress.IPv4Network]:
        raw = decl.attributes.get("cidr_block")
        if not isinstance(raw, str) or EXPR.search(raw):
            return None
        try:
            return ipaddress.IPv4Network(raw, strict=True)
        except ValueError as e:
            errors.append(f"Declaration '{decl.id}' has invalid cidr_block '{raw}': {e}")
            return None

    def _check_vpc(self, decl, stack, by_id, errors, warnings, suggestions):
        net = self._cidr(decl, errors)
        if net is not None and not 16 <= net.prefixlen <= 28:
            errors.append(
                f"VPC '{decl.id}' cidr_block {net} has prefix /{net.prefixlen}. "
                f"VPC blocks must be between /16 and /28."
            )

    def _check_subnet(self, decl, stack, by_id, errors, warnings, suggestions):
        net = self._cidr(decl, errors)
        if net is None:
            return
        m = EXPR.fullmatch(str(decl.attributes.get("vpc_id", "")))
        vpc = by_id.get(m.group(1)) if m else None
        if vpc is None or vpc.type != "aws.vpc":
            return
        try:
            vpc_net = ipaddress.IPv4Network(vpc.attributes.get("cidr_block", ""), strict=True)
        except (TypeError, ValueError):
            return
        if not net.subnet_of(vpc_net):
            errors.append(
                f"Subnet '{decl.id}' cidr_block {net} is outside VPC '{vpc.id}' ({vpc_net})."
            )

    def _check_security_group(self, decl, stack, by_id, errors, warnings, suggestions):
        for rule in decl.attributes.get("ingress") or []:
            if not isinstance(rule, dict):
                continue
            ports = {k: rule.get(k, 0) for k in ("from_port", "to_port")}
            bad = {k: v for k, v in ports.items() if type(v) is not int}
            if bad:
                errors.append(
                    f"Security group '{decl.id}' ingress rule has non-integer port(s): "
                    + ", ".join(f"{k}={v!r}" for k, v in bad.items())
                )
                continue
            cidrs = rule.get("cidr_blocks") or []
            if "0.0.0.0/0" in cidrs and ports["from_port"] <= 22 <= ports["to_port"]:
                warnings.append(
                    f"Security group '{decl.id}' allows SSH (22) from 0.0.0.0/0. "
                    f"Restrict it to your own address range."
                )

    def _check_autoscaling_group(self, decl, stack, by_id, errors, warnings, suggestions):
        attrs = decl.attributes
        lo, hi = attrs.get("min_size"), attrs.get("max_size")
        desired = attrs.get("desired_capacity", lo)
        if not all(isinstance(v, int) for v in (lo, hi, desired)):
            return
        if not lo <= desired <= hi:
            errors.append(
                f"Autoscaling group '{decl.id}' needs min_size <= desired_capacity <= max_size, "
                f"got {lo} <= {desired} <= {hi}."
            )

    def _check_db_instance(self, decl, stack, by_id, errors, warnings, suggestions):
        identifier = decl.attributes.get("identifier")
        if isinstance(identifier, str) and not EXPR.search(identifier):
            if not self.DB_IDENTIFIER.match(identifier) or "--" in identifier or identifier.endswith("-"):
                errors.append(
                    f"DB instance '{decl.id}' identifier '{identifier}' is invalid. "
                    f"Use 1-63 lowercase letters, digits and hyphens, starting with a letter."
                )
        if decl.attributes.get("publicly_accessible") is True:
            warnings.append(
                f"DB instance '{decl.id}' is publicly accessible. "
                f"Keep databases in private subnets behind a security group."
            )
        if "password" not in decl.attributes and "master_password" not in decl.attributes \
                and not decl.attributes.get("manage_master_user_password"):
            warnings.append(
                f"DB instance '{decl.id}' declares no password. "
                f"Reference an aws.secret declaration for the master password."
            )

    def _check_s3_bucket(self, decl, stack, by_id, errors, warnings, suggestions):
        name = decl.attributes.get("bucket")
        if not isinstance(name, str) or EXPR.search(name):
            return
        if not self.BUCKET_NAME.match(name) or ".." in name:
            errors.append(
                f"Bucket '{name}' (declaration: {decl.id}) is invalid. "
                f"Bucket names must be 3-63 characters: lowercase letters, digits, dots and hyphens, "
                f"starting and ending with a letter or digit."
            )
            suggestions.append(f"Try: '{bucket_name(name)}'")
        elif name in self.COMMON_BUCKET_NAMES or len(name) < 8:
            warnings.append(
                f"Bucket '{name}' (declaration: {decl.id}) is short or common. "
                f"Bucket names are global across all AWS accounts and this one is likely taken."
            )
            suggestions.append(f"Try: '{bucket_name(f'{name}-{stack.project}-{stack.env}')}'")

    def _check_secret(self, decl, stack, by_id, errors, warnings, suggestions):
        try:
            SecretPolicy.from_attributes(decl.attributes).check()
        except PolicyViolation as e:
            errors.append(f"Secret '{decl.id}' has an unsatisfiable policy: {e}")
