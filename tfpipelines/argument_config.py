"""
Centralized Argument Configuration for the tfpipelines CLI

Provides a standardized registry of command-line arguments with consistent
names, types, help text, and validation rules across all subcommands.

Flags that mirror config-file settings default to None so that an unset flag
falls back to the file.

Usage:
    from tfpipelines.argument_config import PipelineArgumentParser

    parser = PipelineArgumentParser()
    args = parser.parse(["deploy", "--environment", "staging", "--approver", "alice"])
"""

import argparse
import re
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

_ENVIRONMENT = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_VERSION_PIN = re.compile(r"^v?\d+(\.\d+){0,2}$")


class StandardArguments(Enum):
    """
    Registry of standard arguments used across subcommands.

    Each enum value maps to a tuple of (flags, kwargs) for argparse.add_argument().
    """

    WORKING_DIRECTORY = (
        ["--working-directory"],
        {
            "type": str,
            "help": "Terraform root module directory (default: .)",
            "metavar": "DIR",
        }
    )

    ENVIRONMENT = (
        ["--environment"],
        {
            "type": str,
            "help": "Target environment (e.g. 'staging', 'production')",
            "metavar": "ENV",
        }
    )

    TERRAFORM_VERSION = (
        ["--terraform-version"],
        {
            "type": str,
            "help": "Pinned terraform version, or 'latest' (default: 1.6.6)",
            "metavar": "VERSION",
        }
    )

    REGION = (
        ["--region"],
        {
            "type": str,
            "help": "Cloud region exported to tools (default: us-east-1)",
            "metavar": "REGION",
        }
    )

    # Optional stages (negated flags - default is enabled)
    NO_LINT = (
        ["--no-lint"],
        {
            "action": "store_true",
            "help": "Skip the tflint stage",
        }
    )

    NO_SECURITY_SCAN = (
        ["--no-security-scan"],
        {
            "action": "store_true",
            "help": "Skip the checkov security scan",
        }
    )

    NO_COMPLIANCE = (
        ["--no-compliance"],
        {
            "action": "store_true",
            "help": "Skip the conftest policy check",
        }
    )

    NO_COST_ESTIMATION = (
        ["--no-cost-estimation"],
        {
            "action": "store_true",
            "help": "Skip the infracost estimate",
        }
    )

    VAR_FILE = (
        ["--var-file"],
        {
            "type": str,
            "help": "Variables file passed to terraform plan",
            "metavar": "PATH",
        }
    )

    BACKEND_CONFIG = (
        ["--backend-config"],
        {
            "type": str,
            "help": "Backend configuration file passed to terraform init",
            "metavar": "PATH",
        }
    )

    CONFIG = (
        ["--config"],
        {
            "type": str,
            "help": "Path to configuration file (default: .tfpipelines.yaml if present)",
            "metavar": "PATH",
        }
    )

    AUDIT_DIR = (
        ["--audit-dir"],
        {
            "type": str,
            "help": "Directory for audit logs (default: .tfpipelines/audit)",
            "metavar": "DIR",
        }
    )

    # Reviewer decisions supplied up front
    APPROVER = (
        ["--approver"],
        {
            "action": "append",
            "default": [],
            "help": "Reviewer identity approving the gates (repeatable, in order)",
            "metavar": "REVIEWER",
        }
    )

    REJECTER = (
        ["--reject"],
        {
            "action": "append",
            "default": [],
            "dest": "rejecters",
            "help": "Reviewer identity rejecting the gates (repeatable)",
            "metavar": "REVIEWER",
        }
    )

    INTERACTIVE = (
        ["--interactive"],
        {
            "action": "store_true",
            "help": "Prompt for reviewer decisions on the console",
        }
    )

    OUTPUT_FILE = (
        ["--output-file"],
        {
            "type": str,
            "help": "Write pipeline outputs as JSON to this file",
            "metavar": "PATH",
        }
    )

    PIPELINE_VERSION = (
        ["--pipeline-version"],
        {
            "type": str,
            "help": "Pipeline version pin, e.g. 'v1', 'v1.0' or '1.0.0' (default: latest)",
            "metavar": "PIN",
        }
    )

    RUN_ID = (
        ["--run-id"],
        {
            "type": str,
            "help": "Unique run ID (default: auto-generated timestamp-based ID)",
            "metavar": "ID",
        }
    )

    QUIET = (
        ["-q", "--quiet"],
        {
            "action": "store_true",
            "help": "Suppress console output (outputs still go to --output-file)",
        }
    )

    VERBOSE = (
        ["-v", "--verbose"],
        {
            "action": "store_true",
            "help": "Enable verbose output with detailed logging",
        }
    )

    # Destroy specific
    CONFIRM = (
        ["--confirm"],
        {
            "type": str,
            "default": "",
            "help": "Confirmation word; must equal the configured word exactly (default: DESTROY)",
            "metavar": "WORD",
        }
    )

    # Composed run specific
    BRANCH = (
        ["--branch"],
        {
            "type": str,
            "default": "",
            "help": "Branch that triggered the run",
            "metavar": "BRANCH",
        }
    )

    EVENT = (
        ["--event"],
        {
            "type": str,
            "default": "",
            "help": "Event that triggered the run (e.g. push, pull_request)",
            "metavar": "EVENT",
        }
    )

    # Gate history specific
    GATE_ID = (
        ["--gate-id"],
        {
            "type": str,
            "help": "Only show decisions for this gate",
            "metavar": "ID",
        }
    )

    LIMIT = (
        ["--limit"],
        {
            "type": int,
            "default": 20,
            "help": "Maximum number of decisions to show (default: 20)",
            "metavar": "N",
        }
    )

    STATS = (
        ["--stats"],
        {
            "action": "store_true",
            "help": "Show decision statistics instead of history",
        }
    )


COMMON_ARGUMENTS = [
    StandardArguments.WORKING_DIRECTORY,
    StandardArguments.ENVIRONMENT,
    StandardArguments.TERRAFORM_VERSION,
    StandardArguments.REGION,
    StandardArguments.CONFIG,
    StandardArguments.AUDIT_DIR,
    StandardArguments.OUTPUT_FILE,
    StandardArguments.PIPELINE_VERSION,
    StandardArguments.RUN_ID,
    StandardArguments.QUIET,
    StandardArguments.VERBOSE,
]

CI_ARGUMENTS = [
    StandardArguments.NO_LINT,
    StandardArguments.NO_SECURITY_SCAN,
    StandardArguments.NO_COMPLIANCE,
    StandardArguments.NO_COST_ESTIMATION,
]

GATE_ARGUMENTS = [
    StandardArguments.VAR_FILE,
    StandardArguments.BACKEND_CONFIG,
    StandardArguments.APPROVER,
    StandardArguments.REJECTER,
    StandardArguments.INTERACTIVE,
]

SUBCOMMANDS: Dict[str, Dict] = {
    "ci": {
        "help": "Run the verification stages",
        "arguments": COMMON_ARGUMENTS + CI_ARGUMENTS,
    },
    "deploy": {
        "help": "Run CI, then plan, approval and apply",
        "arguments": COMMON_ARGUMENTS + CI_ARGUMENTS + GATE_ARGUMENTS,
    },
    "destroy": {
        "help": "Confirm, plan a destroy, collect two approvals, destroy",
        "arguments": COMMON_ARGUMENTS + GATE_ARGUMENTS + [StandardArguments.CONFIRM],
    },
    "run": {
        "help": "Run the composed graph: ci, then deploy on pushes to main",
        "arguments": COMMON_ARGUMENTS + CI_ARGUMENTS + GATE_ARGUMENTS + [
            StandardArguments.BRANCH,
            StandardArguments.EVENT,
        ],
    },
}


class ArgumentValidator:
    """
    Validation logic for standardized arguments.

    Provides static methods for validating environment names, reviewer
    identities, version pins and file paths.
    """

    @staticmethod
    def validate_environment(environment: str) -> str:
        """
        Validate an environment name.

        Raises:
            ValueError: If the name is empty or contains unsupported characters
        """
        environment = (environment or "").strip()
        if not environment:
            raise ValueError("Environment cannot be empty")
        if not _ENVIRONMENT.match(environment):
            raise ValueError(
                f"Invalid environment: '{environment}'. "
                "Use letters, digits, dash, dot or underscore"
            )
        return environment

    @staticmethod
    def validate_reviewers(reviewers: List[str]) -> List[str]:
        """
        Strip reviewer identities and drop repeats, preserving order.

        Raises:
            ValueError: If any identity is blank
        """
        seen = set()
        unique = []
        for reviewer in reviewers:
            reviewer = reviewer.strip()
            if not reviewer:
                raise ValueError("Reviewer identity cannot be empty")
            if reviewer not in seen:
                seen.add(reviewer)
                unique.append(reviewer)
        return unique

    @staticmethod
    def validate_version_pin(pin: str) -> str:
        """
        Raises:
            ValueError: If the pin is not v1, v1.2, 1.2.3 or similar
        """
        pin = pin.strip()
        if not _VERSION_PIN.match(pin):
            raise ValueError(f"Invalid pipeline version: '{pin}'. Expected e.g. 'v1', 'v1.2' or '1.2.3'")
        return pin

    @staticmethod
    def validate_config_path(config_path: str) -> Path:
        """
        Validate configuration file path.

        Raises:
            ValueError: If config file doesn't exist or is not a file
        """
        path = Path(config_path)
        if not path.exists():
            raise ValueError(f"Configuration file not found: {config_path}")
        if not path.is_file():
            raise ValueError(
                f"Configuration path is not a file: {config_path}\n"
                "Expected a YAML configuration file."
            )
        return path

    @staticmethod
    def validate_positive_int(value: int, name: str) -> int:
        if value <= 0:
            raise ValueError(f"{name} must be a positive integer, got: {value}")
        return value


class PipelineArgumentParser:
    """
    Standardized argument parser for the tfpipelines CLI.

    Builds one subparser per pipeline from the StandardArguments registry plus
    the `gates history` command.

    Example:
        parser = PipelineArgumentParser()
        args = parser.parse(["destroy", "--environment", "dev", "--confirm", "DESTROY"])
        args.command   # "destroy"
    """

    def __init__(self, prog: str = "tfpipelines"):
        self.parser = argparse.ArgumentParser(
            prog=prog,
            description="Gated terraform pipelines: CI checks, approved deploys and destroys",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        subparsers = self.parser.add_subparsers(dest="command", metavar="COMMAND")
        subparsers.required = True

        for name, definition in SUBCOMMANDS.items():
            subparser = subparsers.add_parser(name, help=definition["help"])
            for std_arg in definition["arguments"]:
                flags, kwargs = std_arg.value
                subparser.add_argument(*flags, **kwargs)

        gates = subparsers.add_parser("gates", help="Inspect approval gate decisions")
        gate_commands = gates.add_subparsers(dest="gates_command", metavar="ACTION")
        gate_commands.required = True
        history = gate_commands.add_parser("history", help="Show recorded gate decisions")
        for std_arg in (
            StandardArguments.AUDIT_DIR,
            StandardArguments.CONFIG,
            StandardArguments.GATE_ID,
            StandardArguments.LIMIT,
            StandardArguments.STATS,
            StandardArguments.VERBOSE,
        ):
            flags, kwargs = std_arg.value
            history.add_argument(*flags, **kwargs)

    def parse(self, args: Optional[List[str]] = None) -> argparse.Namespace:
        """
        Parse arguments and apply validation.

        Raises:
            SystemExit: Exit code 2 on invalid arguments
        """
        parsed_args = self.parser.parse_args(args)

        try:
            self._validate_arguments(parsed_args)
        except ValueError as e:
            self.parser.error(str(e))

        return parsed_args

    def _validate_arguments(self, args: argparse.Namespace):
        if getattr(args, "environment", None) is not None:
            args.environment = ArgumentValidator.validate_environment(args.environment)

        if getattr(args, "approver", None):
            args.approver = ArgumentValidator.validate_reviewers(args.approver)

        if getattr(args, "rejecters", None):
            args.rejecters = ArgumentValidator.validate_reviewers(args.rejecters)

        if getattr(args, "pipeline_version", None):
            args.pipeline_version = ArgumentValidator.validate_version_pin(args.pipeline_version)

        if getattr(args, "config", None):
            ArgumentValidator.validate_config_path(args.config)

        if getattr(args, "limit", None) is not None:
            ArgumentValidator.validate_positive_int(args.limit, "Limit")

        if getattr(args, "interactive", False) and (args.approver or args.rejecters):
            raise ValueError("--interactive cannot be combined with --approver/--reject")
