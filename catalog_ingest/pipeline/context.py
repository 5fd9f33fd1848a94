"""
Run-scoped state shared by the transform and load phases.
"""
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from catalog_ingest.models.domain import (
    CategoryEntity,
    IssueKind,
    ProducerEntity,
    RecordIssue,
    SyncType,
    UnitEntity,
)


class RunContext(BaseModel):
    """
    Arena of maps owned by one run.

    Transform fills the dedup maps keyed by natural key; load fills the
    natural-key to surrogate-id maps as rows are written. Nothing here outlives
    the run.
    """

    run_id: str = Field(default_factory=lambda: str(uuid4()))
    sync_type: SyncType = SyncType.FULL
    source_file: str = ""

    categories: dict[str, CategoryEntity] = Field(default_factory=dict)
    producers: dict[str, ProducerEntity] = Field(default_factory=dict)
    units: dict[str, UnitEntity] = Field(default_factory=dict)
    product_codes: set[str] = Field(default_factory=set)

    producer_ids: dict[str, int] = Field(default_factory=dict)
    product_ids: dict[str, int] = Field(default_factory=dict)
    variant_ids: dict[tuple[str, str], int] = Field(default_factory=dict)

    issues: list[RecordIssue] = Field(default_factory=list)

    def record_issue(
        self,
        kind: IssueKind,
        message: str,
        product_code: Optional[str] = None,
        field: Optional[str] = None,
        record_index: Optional[int] = None,
    ) -> RecordIssue:
        issue = RecordIssue(
            kind=kind,
            message=message,
            product_code=product_code,
            field=field,
            record_index=record_index,
        )
        self.issues.append(issue)
        return issue


__all__ = ["RunContext"]
