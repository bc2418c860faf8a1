# backend/valuation_engine/services/market_data/corporate_actions.py
"""
Corporate Action Service: stock splits.

Splits are fetched from the provider chain and stored write-once per
(asset, date). The holding reconciler and the valuation rebuilder read
them from the database; neither calls a provider for splits.

A split with ratio r on date d multiplies quantity by r and divides
average cost by r, applied before any transaction dated d.
"""

import logging
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from valuation_engine.models import Asset, StockSplit
from valuation_engine.services.exceptions import AllProvidersExhausted
from valuation_engine.services.providers import Instrument, Operation, ProviderChain
from valuation_engine.utils.sql import insert_ignore

logger = logging.getLogger(__name__)


class CorporateActionService:
    def __init__(self, chain: ProviderChain | None) -> None:
        self._chain = chain

    def sync_splits(
            self,
            db: Session,
            asset: Asset,
            start_date: date,
            end_date: date,
    ) -> int:
        """
        Fetch splits for an asset and record any not yet known.

        Returns:
            Number of new splits stored. Provider failure yields 0 and a
            warning: previously recorded splits stay in effect.
        """
        if self._chain is None:
            return 0

        instrument = Instrument.equity(asset.ticker, asset.exchange)
        try:
            result = self._chain.resolve(Operation.SPLITS, instrument, start_date, end_date)
        except AllProvidersExhausted as e:
            logger.warning(f"Split lookup failed for {instrument}: {e}")
            return 0

        rows = [
            {
                "asset_id": asset.id,
                "split_date": event.date,
                "ratio": event.ratio,
                "provider": result.provider,
            }
            for event in result.value
        ]
        inserted = insert_ignore(db, StockSplit, rows, ["asset_id", "split_date"])
        db.flush()
        if inserted:
            logger.info(f"Recorded {inserted} new split(s) for {instrument}")
        return inserted

    @staticmethod
    def get_splits(db: Session, asset_id: int) -> list[StockSplit]:
        """All recorded splits for an asset, oldest first."""
        return list(db.scalars(
            select(StockSplit)
            .where(StockSplit.asset_id == asset_id)
            .order_by(StockSplit.split_date)
        ).all())

    @staticmethod
    def get_splits_by_asset(db: Session, asset_ids: list[int]) -> dict[int, list[StockSplit]]:
        """Recorded splits for several assets in one query."""
        result: dict[int, list[StockSplit]] = {asset_id: [] for asset_id in asset_ids}
        if not asset_ids:
            return result
        for split in db.scalars(
                select(StockSplit)
                .where(StockSplit.asset_id.in_(asset_ids))
                .order_by(StockSplit.asset_id, StockSplit.split_date)
        ):
            result[split.asset_id].append(split)
        return result
