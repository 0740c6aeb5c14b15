"""
Incremental ingestion of CRM cases into raw inputs.

Only cases whose source id has never been stored for the account are
ingested; the unique key on raw_inputs catches anything that slips past.
"""

from typing import Iterable, List, Set
import logging

from friction_pipeline.data_access.postgres_client import PostgresClient
from friction_pipeline.models.schemas import Account, CaseRecord, RawInput


logger = logging.getLogger(__name__)


def select_new_cases(cases: Iterable[CaseRecord], existing_ids: Set[str]) -> List[CaseRecord]:
    """
    Return the cases not yet ingested, keeping fetch order.

    A case id repeated inside one fetch is kept only the first time.
    """
    seen = set(existing_ids)
    new_cases = []
    for case in cases:
        if case.id in seen:
            continue
        seen.add(case.id)
        new_cases.append(case)
    return new_cases


class RecordDeduplicator:
    """Filter fetched cases down to the ones the store has not seen."""

    def __init__(self, store: PostgresClient):
        self.store = store

    def filter_new(self, account_id: str, cases: List[CaseRecord], source_type: str) -> List[CaseRecord]:
        if not cases:
            return []

        existing_ids = self.store.get_existing_source_ids(account_id, source_type)
        new_cases = select_new_cases(cases, existing_ids)
        logger.info(
            f"Account {account_id}: {len(cases)} cases fetched, "
            f"{len(cases) - len(new_cases)} already ingested, {len(new_cases)} new"
        )
        return new_cases


def build_raw_inputs(
    account: Account,
    user_id: str,
    cases: List[CaseRecord],
    instance_url: str,
    source_type: str = "salesforce_case",
) -> List[RawInput]:
    """
    Map CRM cases to unprocessed raw inputs.

    Args:
        account: Account the cases belong to
        user_id: Portfolio owner
        cases: New cases from the deduplicator
        instance_url: CRM base URL used to build a link back to each case
        source_type: Source type stored on each row

    Returns:
        List of RawInput objects ready to insert
    """
    base_url = instance_url.rstrip("/")
    return [
        RawInput(
            account_id=account.id,
            user_id=user_id,
            source_type=source_type,
            source_id=case.id,
            source_url=f"{base_url}/{case.id}",
            text_content=case.text_content,
            metadata={
                "case_number": case.case_number,
                "subject": case.subject,
                "status": case.status,
                "priority": case.priority,
                "origin": case.origin,
                "created_date": case.created_date.isoformat() if case.created_date else None,
            },
            processed=False,
        )
        for case in cases
    ]
