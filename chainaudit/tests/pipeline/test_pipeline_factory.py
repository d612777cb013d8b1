import pytest

from chainaudit.app.analyzers.near import NearAnalyzer
from chainaudit.app.analyzers.solana import SolanaAnalyzer
from chainaudit.app.config import ChainAuditConfig
from chainaudit.app.errors import AuditValidationError, UnsupportedNetworkError
from chainaudit.app.pipeline.factory import PipelineFactory
from chainaudit.app.schemas.job_status import JobState
from chainaudit.tests.helpers import StubAnalyzer, stub_builder


def test_creates_network_specific_pipelines():
    factory = PipelineFactory(config=ChainAuditConfig(DEFAULT_TIMEOUT_MS=5000))

    solana = factory.create_pipeline("solana", "job-sol", total_files=3)
    near = factory.create_pipeline("near", "job-near")

    assert isinstance(solana.analyzer, SolanaAnalyzer)
    assert isinstance(near.analyzer, NearAnalyzer)
    assert solana.settings.file_extensions == [".rs"]
    assert solana.capability.display_name == "Solana"

    machine = solana.state_machine
    assert machine.job_id == "job-sol"
    assert machine.status.status == JobState.QUEUED
    assert machine.status.total_files == 3
    assert machine.status.network == "solana"


def test_each_job_gets_its_own_analyzer():
    factory = PipelineFactory()

    first = factory.create_pipeline("solana", "job-1")
    second = factory.create_pipeline("solana", "job-2")

    assert first.analyzer is not second.analyzer
    assert first.state_machine is not second.state_machine


@pytest.mark.parametrize("network", ["aptos", "sui", "ethereum", "starknet", "cosmos"])
def test_unimplemented_or_unknown_networks_are_rejected(network):
    factory = PipelineFactory()

    with pytest.raises(UnsupportedNetworkError) as excinfo:
        factory.create_pipeline(network, "job-x")

    assert isinstance(excinfo.value, AuditValidationError)
    assert str(excinfo.value) == f"Network '{network}' is not supported for auditing"


def test_custom_builders_replace_the_registry_defaults():
    analyzer = StubAnalyzer()
    factory = PipelineFactory(analyzers={"solana": stub_builder(analyzer)})

    pipeline = factory.create_pipeline("solana", "job-stub")
    assert pipeline.analyzer is analyzer

    with pytest.raises(UnsupportedNetworkError):
        factory.ensure_supported("near")

    implemented = {c.network for c in factory.capabilities() if c.implemented}
    assert implemented == {"solana"}


def test_capabilities_list_every_registered_network():
    networks = {c.network: c for c in PipelineFactory().capabilities()}

    assert set(networks) == {"solana", "near", "aptos", "sui", "ethereum", "starknet"}
    assert networks["solana"].implemented is True
    assert networks["near"].implemented is True
    assert networks["ethereum"].implemented is False
    assert networks["ethereum"].language == "solidity"
