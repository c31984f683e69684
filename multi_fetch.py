"""
Parallel Multi-Source Fetch

Runs several independent one-shot queries at once and reports each source's
outcome separately, so one missing index does not blank the whole page.
"""

import asyncio
from typing import Dict, Mapping, Optional, Type

from database import QuerySpec
from live_query import Outcome, unexpected_failure
from logging_config import logger
from schemas import decode_records


async def fetch_all(
    store,
    sources: Mapping[str, QuerySpec],
    models: Optional[Mapping[str, Type]] = None,
) -> Dict[str, Outcome]:
    """
    Query every source concurrently and wait for all of them to settle.

    Args:
        store: document store with a blocking `query(spec)` method
        sources: source id -> query, in display order
        models: optional source id -> record type to decode into

    Returns:
        source id -> Outcome, in the same order as `sources`
    """
    models = models or {}
    names = list(sources)

    def run(name: str):
        spec = sources[name]
        docs = store.query(spec)
        model = models.get(name)
        return decode_records(model, docs, spec.collection) if model else docs

    results = await asyncio.gather(
        *(asyncio.to_thread(run, name) for name in names),
        return_exceptions=True,
    )

    outcomes: Dict[str, Outcome] = {}
    for name, result in zip(names, results):
        if isinstance(result, BaseException):
            if not isinstance(result, Exception):
                raise result
            error = unexpected_failure(result, sources[name].collection)
            logger.warning(f"{name} fetch error: {error.code} {error.message}")
            outcomes[name] = Outcome.failure(error)
        else:
            outcomes[name] = Outcome.success(result)
    return outcomes
