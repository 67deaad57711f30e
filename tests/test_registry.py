"""
Tests for tfpipelines.registry module.
"""

import pytest

from tfpipelines.pipelines import CIPipeline, DeployPipeline
from tfpipelines.registry import PipelineNotFoundError, PipelineRegistry, default_registry


@pytest.fixture
def registry() -> PipelineRegistry:
    registry = default_registry()
    registry.register("deploy", "1.2.0", DeployPipeline)
    registry.register("deploy", "1.2.5", DeployPipeline)
    registry.register("deploy", "2.0.0", DeployPipeline)
    return registry


class TestResolve:
    """Tests for version pin resolution."""

    def test_default_registry(self) -> None:
        registry = default_registry()
        assert registry.names() == ["ci", "deploy", "destroy"]
        assert registry.resolve("ci").pipeline_class is CIPipeline

    def test_latest(self, registry) -> None:
        assert registry.resolve("deploy").ref == "deploy@2.0.0"

    def test_major_pin(self, registry) -> None:
        assert registry.resolve("deploy@v1").ref == "deploy@1.2.5"

    def test_minor_pin(self, registry) -> None:
        assert registry.resolve("deploy@v1.0").ref == "deploy@1.0.0"

    def test_exact_pin(self, registry) -> None:
        assert registry.resolve("deploy@1.2.0").ref == "deploy@1.2.0"

    def test_unknown_name(self, registry) -> None:
        with pytest.raises(PipelineNotFoundError, match="Unknown pipeline") as exc_info:
            registry.resolve("rollback@v1")
        assert "registered: ci, deploy, destroy" in str(exc_info.value)

    def test_unsatisfiable_pin(self, registry) -> None:
        with pytest.raises(PipelineNotFoundError, match="available"):
            registry.resolve("deploy@v3")

    def test_malformed_pin(self, registry) -> None:
        with pytest.raises(PipelineNotFoundError):
            registry.resolve("deploy@latest-ish")


class TestRegister:
    def test_duplicate_version(self) -> None:
        registry = default_registry()
        with pytest.raises(ValueError, match="already registered"):
            registry.register("ci", "1.0.0", CIPipeline)

    def test_invalid_version(self) -> None:
        with pytest.raises(ValueError):
            PipelineRegistry().register("ci", "1.0", CIPipeline)
