"""
Pipeline construction.

The factory resolves a network through the capability registry and
builds one analyzer plus one state machine per job. Networks are
registered by mapping a network id to an analyzer builder; adding a
network never touches the state machine.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from chainaudit.app.analyzers.near import NearAnalyzer
from chainaudit.app.analyzers.solana import SolanaAnalyzer
from chainaudit.app.config import ChainAuditConfig
from chainaudit.app.enrichment.service import EnrichmentService, NullEnrichmentService
from chainaudit.app.errors import UnsupportedNetworkError
from chainaudit.app.pipeline.analyzer_base import NetworkAnalyzer
from chainaudit.app.pipeline.state_machine import StageStateMachine
from chainaudit.app.registry.capabilities import (
    CapabilityEntry,
    NetworkSettings,
    get_capability,
    get_network_settings,
    list_capabilities,
)
from chainaudit.app.tools.runner import ExternalToolRunner

logger = logging.getLogger(__name__)


AnalyzerBuilder = Callable[..., NetworkAnalyzer]

ANALYZER_BUILDERS: Dict[str, AnalyzerBuilder] = {
    "solana": SolanaAnalyzer,
    "near": NearAnalyzer,
}


class AuditPipeline(BaseModel):
    """
    One job's executable pipeline.
    """

    network: str
    capability: CapabilityEntry
    settings: NetworkSettings
    analyzer: Any
    state_machine: StageStateMachine

    model_config = ConfigDict(arbitrary_types_allowed=True)


class PipelineFactory:
    def __init__(
        self,
        *,
        config: Optional[ChainAuditConfig] = None,
        enrichment: Optional[EnrichmentService] = None,
        tool_runner: Optional[ExternalToolRunner] = None,
        analyzers: Optional[Dict[str, AnalyzerBuilder]] = None,
    ) -> None:
        self.config = config or ChainAuditConfig()
        self.enrichment = enrichment or NullEnrichmentService()
        self.tool_runner = tool_runner
        self._builders = dict(ANALYZER_BUILDERS if analyzers is None else analyzers)

    def capabilities(self) -> List[CapabilityEntry]:
        """
        Registered networks, with `implemented` reflecting this factory.
        """
        return [
            entry.model_copy(
                update={"implemented": entry.implemented and entry.network in self._builders}
            )
            for entry in list_capabilities()
        ]

    def ensure_supported(self, network: str) -> CapabilityEntry:
        capability = get_capability(network)
        if (
            capability is None
            or not capability.implemented
            or network not in self._builders
            or get_network_settings(network) is None
        ):
            raise UnsupportedNetworkError(network)
        return capability

    def create_pipeline(
        self,
        network: str,
        job_id: str,
        *,
        total_files: int = 0,
    ) -> AuditPipeline:
        capability = self.ensure_supported(network)
        settings = get_network_settings(network)

        analyzer = self._builders[network](
            job_id=job_id,
            capability=capability,
            settings=settings,
            enrichment=self.enrichment,
            tool_runner=self.tool_runner,
            confidence_threshold=self.config.CONFIDENCE_THRESHOLD,
            max_findings=self.config.MAX_REPORT_FINDINGS,
        )

        state_machine = StageStateMachine(
            job_id=job_id,
            network=network,
            analyzer=analyzer,
            total_files=total_files,
            default_timeout_ms=self.config.DEFAULT_TIMEOUT_MS,
        )

        logger.debug("Created %s pipeline for job %s", network, job_id)

        return AuditPipeline(
            network=network,
            capability=capability,
            settings=settings,
            analyzer=analyzer,
            state_machine=state_machine,
        )
