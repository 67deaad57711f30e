"""CI, deploy and destroy pipelines."""

from tfpipelines.pipelines.ci import CIPipeline
from tfpipelines.pipelines.deploy import DeployPipeline
from tfpipelines.pipelines.destroy import DestroyPipeline

__all__ = ["CIPipeline", "DeployPipeline", "DestroyPipeline"]
