#!/usr/bin/env python3
"""
tfpipelines command-line interface.

Usage:
    tfpipelines ci --environment staging --no-cost-estimation
    tfpipelines deploy --environment production --approver alice
    tfpipelines destroy --environment dev --confirm DESTROY --approver alice --approver bob
    tfpipelines run --environment production --branch main --event push --approver alice
    tfpipelines gates history --limit 10

Exit codes:
    0  pipeline succeeded
    1  pipeline failed or was cancelled
    2  usage or configuration error
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from tfpipelines.approval_gates import (
    ApprovalAuditLog,
    ApprovalPolicy,
    ConsoleApprovalSource,
    StaticApprovalSource,
)
from tfpipelines.argument_config import PipelineArgumentParser
from tfpipelines.config import ConfigError, PipelineSettings, load_settings
from tfpipelines.console import console, print_error, print_info
from tfpipelines.credentials import OIDCCredentialExchange, SessionCredentials, tool_environment
from tfpipelines.error_handling import PipelineError
from tfpipelines.executor import TerraformExecutor
from tfpipelines.graph import GraphResult, TriggerContext, standard_graph
from tfpipelines.output_formatter import OutputFormatter
from tfpipelines.registry import PipelineNotFoundError, PipelineRegistry, default_registry
from tfpipelines.schemas import (
    ConfirmationToken,
    FeatureFlags,
    PipelineInvocation,
    PipelineResult,
    PipelineSecrets,
)
from tfpipelines.stages import VerificationStageRunner
from tfpipelines.subprocess_security import SecureSubprocess

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2

PIPELINES_BY_COMMAND = {
    "ci": ("ci",),
    "deploy": ("ci", "deploy"),
    "destroy": ("destroy",),
    "run": ("ci", "deploy"),
}

_debug_handler: Optional[logging.Handler] = None


def configure_logging(verbose: bool) -> None:
    """Route package diagnostics to stderr at DEBUG when verbose."""
    global _debug_handler
    package_logger = logging.getLogger("tfpipelines")

    if _debug_handler is not None:
        package_logger.removeHandler(_debug_handler)
        _debug_handler = None

    if verbose:
        package_logger.setLevel(logging.DEBUG)
        handler = logging.StreamHandler()
        handler.setLevel(logging.DEBUG)
        formatter = logging.Formatter('[DEBUG] %(asctime)s - %(message)s', '%Y-%m-%d %H:%M:%S')
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)
        _debug_handler = handler
    else:
        package_logger.setLevel(logging.WARNING)


def build_invocation(settings: PipelineSettings, args: argparse.Namespace) -> PipelineInvocation:
    """Merge config-file settings with CLI flags (flags win; --no-* only ever disable)."""
    flags = FeatureFlags(
        enable_lint=settings.flags.enable_lint and not getattr(args, "no_lint", False),
        enable_security_scan=settings.flags.enable_security_scan and not getattr(args, "no_security_scan", False),
        enable_compliance=settings.flags.enable_compliance and not getattr(args, "no_compliance", False),
        enable_cost_estimation=(
            settings.flags.enable_cost_estimation and not getattr(args, "no_cost_estimation", False)
        ),
    )
    return settings.to_invocation(
        working_directory=args.working_directory,
        environment=args.environment,
        terraform_version=args.terraform_version,
        region=args.region,
        flags=flags,
        var_file=getattr(args, "var_file", None),
        backend_config=getattr(args, "backend_config", None),
    )


def secrets_from_environment() -> PipelineSecrets:
    """Secret inputs are only ever read from the environment."""
    return PipelineSecrets(
        infracost_api_key=os.environ.get("INFRACOST_API_KEY") or None,
        terraform_token=os.environ.get("TF_API_TOKEN") or None,
    )


class PipelineRunner:
    """Wires settings, tools and approval sources into pipelines for one CLI call."""

    def __init__(
        self,
        settings: PipelineSettings,
        args: argparse.Namespace,
        invocation: PipelineInvocation,
        registry: PipelineRegistry,
        credentials: Optional[SessionCredentials] = None,
    ):
        self.settings = settings
        self.args = args
        self.invocation = invocation
        self.registry = registry
        self.audit_dir = Path(args.audit_dir or settings.audit_dir)

        secure = SecureSubprocess(
            allowed_commands=set(settings.allowed_commands),
            audit_log_dir=self.audit_dir,
        )
        env = tool_environment(invocation, secrets_from_environment(), credentials)
        self.stage_runner = VerificationStageRunner(secure, env=env)
        self.executor = TerraformExecutor(secure, artifact_dir=Path(settings.artifact_dir), env=env)

        if getattr(args, "interactive", False):
            self.approval_source = ConsoleApprovalSource()
        else:
            self.approval_source = StaticApprovalSource(
                getattr(args, "approver", []), getattr(args, "rejecters", [])
            )

    def _resolve(self, name: str):
        pin = self.args.pipeline_version
        return self.registry.resolve(f"{name}@{pin}" if pin else name).pipeline_class

    def _common(self) -> Dict[str, Any]:
        return {
            "policy": ApprovalPolicy(self.settings.reviewers),
            "approval_source": self.approval_source,
            "gate_timeout_seconds": self.settings.gate_timeout_seconds,
            "audit_dir": self.audit_dir,
            "quiet_mode": self.args.quiet,
        }

    def run_ci(self, results: Optional[Dict[str, PipelineResult]] = None) -> PipelineResult:
        pipeline_class = self._resolve("ci")
        run_id = self.args.run_id if self.args.command == "ci" else None
        return pipeline_class(self.invocation, self.stage_runner, run_id=run_id, **self._common()).execute()

    def run_deploy(self, results: Dict[str, PipelineResult]) -> PipelineResult:
        pipeline_class = self._resolve("deploy")
        return pipeline_class(
            self.invocation, self.executor, ci_result=results.get("ci"), **self._common()
        ).execute()

    def run_destroy(self) -> PipelineResult:
        pipeline_class = self._resolve("destroy")
        token = ConfirmationToken(
            supplied_word=self.args.confirm,
            expected_word=self.settings.confirmation_word,
        )
        return pipeline_class(
            self.invocation, self.executor, confirmation=token, run_id=self.args.run_id, **self._common()
        ).execute()

    def run_command(self) -> Dict[str, Any]:
        """
        Run the requested subcommand.

        Returns:
            {"success": bool, "outputs": {pipeline: outputs}}
        """
        command = self.args.command

        if command == "ci":
            ci = self.run_ci()
            return {"success": ci.success, "outputs": {"ci": ci.outputs}}

        if command == "deploy":
            ci = self.run_ci()
            deploy = self.run_deploy({"ci": ci})
            return {"success": deploy.success, "outputs": {"ci": ci.outputs, "deploy": deploy.outputs}}

        if command == "destroy":
            destroy = self.run_destroy()
            return {"success": destroy.success, "outputs": {"destroy": destroy.outputs}}

        if command == "run":
            graph = standard_graph(self.run_ci, self.run_deploy)
            outcome = graph.run(TriggerContext(branch=self.args.branch, event=self.args.event))
            if not self.args.quiet:
                for name, node in outcome.outcomes.items():
                    if not node.ran:
                        print_info(f"{name} skipped: {node.skip_reason}")
            return {"success": outcome.success, "outputs": graph_outputs(outcome)}

        raise ValueError(f"Unknown command: {command}")


def graph_outputs(outcome: GraphResult) -> Dict[str, Any]:
    outputs: Dict[str, Any] = {}
    for name, node in outcome.outcomes.items():
        if node.ran:
            outputs[name] = node.result.outputs
        else:
            outputs[name] = {"overall_status": "skipped", "reason": node.skip_reason}
    return outputs


def write_outputs(path: str, outputs: Dict[str, Any]) -> None:
    output_path = Path(path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(outputs, f, indent=2)


def show_gate_history(args: argparse.Namespace, settings: PipelineSettings) -> int:
    audit_log = ApprovalAuditLog(Path(args.audit_dir or settings.audit_dir))
    if args.stats:
        stats = audit_log.stats()
        for key, value in stats.items():
            console.print(f"{key}: {value:.1f}" if isinstance(value, float) else f"{key}: {value}")
        return EXIT_SUCCESS

    entries = audit_log.history(gate_id=args.gate_id, limit=args.limit)
    if not entries:
        print_info("No gate decisions recorded")
        return EXIT_SUCCESS
    console.print(OutputFormatter.gate_history(entries))
    return EXIT_SUCCESS


def main(argv: Optional[List[str]] = None) -> int:
    args = PipelineArgumentParser().parse(argv)
    configure_logging(args.verbose)

    try:
        settings = load_settings(Path(args.config) if args.config else None)
    except ConfigError as e:
        print_error(str(e))
        return EXIT_USAGE

    if args.command == "gates":
        return show_gate_history(args, settings)

    try:
        invocation = build_invocation(settings, args)
    except (ConfigError, ValidationError) as e:
        print_error(f"Invalid invocation: {e}")
        return EXIT_USAGE

    registry = default_registry()
    try:
        if args.pipeline_version:
            for name in PIPELINES_BY_COMMAND[args.command]:
                registry.resolve(f"{name}@{args.pipeline_version}")
    except PipelineNotFoundError as e:
        print_error(str(e))
        return EXIT_USAGE

    credentials = None
    if settings.oidc_role_arn and args.command != "ci":
        try:
            credentials = OIDCCredentialExchange(
                role_arn=settings.oidc_role_arn,
                region=invocation.region,
                session_name=settings.oidc_session_name,
            ).exchange()
        except PipelineError as e:
            print_error(e.format(pipeline_name=args.command))
            return EXIT_FAILURE

    runner = PipelineRunner(settings, args, invocation, registry, credentials)
    outcome = runner.run_command()

    if args.output_file:
        write_outputs(args.output_file, outcome["outputs"])
        logger.debug("Outputs written to %s", args.output_file)

    return EXIT_SUCCESS if outcome["success"] else EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
