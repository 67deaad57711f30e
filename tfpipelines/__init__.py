"""
tfpipelines - Gated Terraform Pipelines

Verification checks, approval-gated deploys and doubly-approved destroys for
terraform root modules, with every stage, gate decision and tool execution
audited.
"""

from tfpipelines.approval_gates import (
    ApprovalGate,
    ApprovalPolicy,
    ConsoleApprovalSource,
    StaticApprovalSource,
)
from tfpipelines.base import PipelineOrchestrator
from tfpipelines.config import PipelineSettings, load_settings
from tfpipelines.error_handling import PipelineError
from tfpipelines.executor import TerraformExecutor
from tfpipelines.graph import PipelineGraph, TriggerContext, standard_graph
from tfpipelines.pipelines import CIPipeline, DeployPipeline, DestroyPipeline
from tfpipelines.registry import PipelineNotFoundError, PipelineRegistry, default_registry
from tfpipelines.schemas import (
    ApprovalGateConfig,
    ConfirmationToken,
    FeatureFlags,
    PipelineInvocation,
    PipelineResult,
    StageResult,
)
from tfpipelines.stages import VerificationStageRunner
from tfpipelines.subprocess_security import SecureSubprocess

__version__ = "1.0.0"

__all__ = [
    "ApprovalGate",
    "ApprovalGateConfig",
    "ApprovalPolicy",
    "CIPipeline",
    "ConfirmationToken",
    "ConsoleApprovalSource",
    "DeployPipeline",
    "DestroyPipeline",
    "FeatureFlags",
    "PipelineError",
    "PipelineGraph",
    "PipelineInvocation",
    "PipelineNotFoundError",
    "PipelineOrchestrator",
    "PipelineRegistry",
    "PipelineResult",
    "PipelineSettings",
    "SecureSubprocess",
    "StageResult",
    "StaticApprovalSource",
    "TerraformExecutor",
    "TriggerContext",
    "VerificationStageRunner",
    "default_registry",
    "load_settings",
    "standard_graph",
]
