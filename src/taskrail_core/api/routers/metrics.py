"""Rule metrics rollups per workflow, organization and project."""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ... import rule_ledger, schemas
from ...database import get_db

router = APIRouter(tags=["metrics"])


@router.get("/workflows/{workflow_id}", response_model=list[schemas.RuleMetricsResponse])
def workflow_metrics(
    workflow_id: int,
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
):
    """Per-rule counts for every rule in a workflow."""
    return [
        schemas.RuleMetricsResponse.model_validate(m)
        for m in rule_ledger.workflow_metrics(db, workflow_id, since, until)
    ]


@router.get("/organizations/{org_id}", response_model=list[schemas.WorkflowMetricsResponse])
def org_metrics(
    org_id: int,
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
):
    """Per-workflow rollup across an organization."""
    return [
        schemas.WorkflowMetricsResponse.model_validate(m)
        for m in rule_ledger.org_metrics_summary(db, org_id, since, until)
    ]


@router.get("/projects/{project_id}", response_model=list[schemas.WorkflowMetricsResponse])
def project_metrics(
    project_id: int,
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
):
    """Per-workflow rollup for the workflows scoped to a project."""
    return [
        schemas.WorkflowMetricsResponse.model_validate(m)
        for m in rule_ledger.project_metrics_summary(db, project_id, since, until)
    ]
