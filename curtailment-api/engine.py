"""
Wires the reconciliation components together from Settings.
"""

import logging
from dataclasses import dataclass

import db
from cascade import CascadeAggregator
from config import Settings
from day_ingestor import DayIngestor
from difficulty import DifficultyResolver
from elexon_client import ElexonClient
from reference_data import load_bmu_mapping
from repair import RepairCoordinator
from slice_processor import SliceProcessor
from store import CurtailmentStore
from verifier import Verifier

logger = logging.getLogger("curtailment.engine")


@dataclass
class Engine:
    settings: Settings
    store: CurtailmentStore
    client: ElexonClient
    coordinator: RepairCoordinator

    def close(self):
        self.client.close()
        db.close_pool()


def build_store(settings: Settings) -> CurtailmentStore:
    db.configure(settings.database_url, settings.db_pool_min, settings.db_pool_max)
    return CurtailmentStore(db.get_connection)


def build_engine(settings: Settings) -> Engine:
    """Raises ConfigurationError before touching the network or database
    if the BMU mapping cannot be loaded."""
    mapping = load_bmu_mapping(settings.bmu_mapping_path)
    store = build_store(settings)
    client = ElexonClient(settings, mapping)

    processor = SliceProcessor(client, store, settings, mapping)
    ingestor = DayIngestor(processor, store, settings)
    cascade = CascadeAggregator(store, DifficultyResolver(store, settings.default_difficulty))
    verifier = Verifier(client, store, settings)
    coordinator = RepairCoordinator(verifier, ingestor, cascade, store, settings.miner_models,
                                    verify_after_repair=settings.verify_after_repair)
    logger.info("Engine ready: %d BMUs, models %s", len(mapping), ", ".join(settings.miner_models))
    return Engine(settings=settings, store=store, client=client, coordinator=coordinator)
