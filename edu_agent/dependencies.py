"""Service graph wiring.

Every service takes its collaborators in the constructor; this module is the
one place that builds the graph from :mod:`edu_agent.config`. Routers reach it
through the ``get_services`` dependency, which tests override.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass
from typing import Optional

from edu_agent.config import Settings, settings
from edu_agent.db import Database
from edu_agent.services.admin_config import AdminConfig
from edu_agent.services.chunk_catalog import ChunkCatalog
from edu_agent.services.chunk_engine import ChunkDeliveryEngine
from edu_agent.services.completion import CompletionHandler
from edu_agent.services.journal import ResponseJournal
from edu_agent.services.lead_in import LeadInGenerator
from edu_agent.services.llm_service import LLMClient
from edu_agent.services.report_service import ReportGenerator
from edu_agent.services.session_resolver import SessionRegistry, SessionResolver
from edu_agent.services.session_store import ConversationSessionStore
from edu_agent.services.turn_orchestrator import TurnOrchestrator


@dataclass
class Services:
    settings: Settings
    db: Database
    catalog: ChunkCatalog
    admin: AdminConfig
    store: ConversationSessionStore
    journal: ResponseJournal
    engine: ChunkDeliveryEngine
    registry: SessionRegistry
    resolver: SessionResolver
    llm: LLMClient
    reports: ReportGenerator
    orchestrator: TurnOrchestrator


def build_services(
    cfg: Settings,
    llm: Optional[LLMClient] = None,
    reports: Optional[ReportGenerator] = None,
) -> Services:
    """Build the full graph; ``llm`` / ``reports`` can be swapped for fakes."""
    db = Database(cfg.db_path)
    catalog = ChunkCatalog(db)
    admin = AdminConfig(db)
    store = ConversationSessionStore(db, catalog, admin)
    journal = ResponseJournal(db)
    engine = ChunkDeliveryEngine(store, catalog)
    registry = SessionRegistry(cfg.registry_dir)
    resolver = SessionResolver(
        store,
        registry,
        max_attempts=cfg.resolver_attempts,
        base_delay=cfg.resolver_base_delay,
    )
    llm = llm or LLMClient(cfg)
    reports = reports or ReportGenerator(db, catalog, cfg.reports_dir)
    orchestrator = TurnOrchestrator(
        db=db,
        resolver=resolver,
        store=store,
        catalog=catalog,
        engine=engine,
        journal=journal,
        lead_in=LeadInGenerator(llm, timeout=cfg.lead_in_timeout),
        completion=CompletionHandler(reports, journal, timeout=cfg.report_timeout),
        admin_config=admin,
        llm=llm,
        assistant_name=cfg.assistant_name,
    )
    return Services(
        settings=cfg,
        db=db,
        catalog=catalog,
        admin=admin,
        store=store,
        journal=journal,
        engine=engine,
        registry=registry,
        resolver=resolver,
        llm=llm,
        reports=reports,
        orchestrator=orchestrator,
    )


@functools.lru_cache(maxsize=1)
def get_services() -> Services:
    return build_services(settings)
