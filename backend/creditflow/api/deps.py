from fastapi import Depends
from sqlalchemy.orm import Session

from creditflow.core.clock import Clock, get_clock
from creditflow.core.database import get_db
from creditflow.services.approvals import ApprovalPolicy
from creditflow.services.pipeline import ActionPipeline


def get_pipeline(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> ActionPipeline:
    return ActionPipeline(db, clock)


def get_policy() -> ApprovalPolicy:
    return ApprovalPolicy.from_settings()
