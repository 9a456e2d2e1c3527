from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from wacanda.database import get_db
from wacanda.models import ProviderInstance
from wacanda.schemas.sync import SyncProgressResponse
from wacanda.services.reconciliation_service import ReconciliationEngine, build_reconciliation_engine

router = APIRouter(prefix="/instances", tags=["instances"])


def get_reconciliation_engine() -> ReconciliationEngine:
    return build_reconciliation_engine()


def _get_instance(db: Session, instance_key: str) -> ProviderInstance:
    instance = db.query(ProviderInstance).filter(ProviderInstance.instance_key == instance_key).first()
    if instance is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Instance '{instance_key}' not found")
    return instance


@router.post("/{instance_key}/sync", response_model=SyncProgressResponse)
def sync_instance(
    instance_key: str,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    """Run a full reconciliation of the instance's provider history."""
    instance = _get_instance(db, instance_key)
    return engine.reconcile(instance.owner_id, instance_key).to_dict()


@router.post("/{instance_key}/conversations/{remote_jid}/sync", response_model=SyncProgressResponse)
def sync_conversation(
    instance_key: str,
    remote_jid: str,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    instance = _get_instance(db, instance_key)
    return engine.reconcile_conversation(instance.owner_id, instance_key, remote_jid).to_dict()
