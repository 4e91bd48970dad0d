from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from chathub.auth import get_current_user_id
from chathub.database import get_db
from chathub.schemas.chat import PlatformAccountOut
from chathub.services.account_service import list_accounts

router = APIRouter(tags=["platform-accounts"])


@router.get("/platform-accounts", response_model=list[PlatformAccountOut])
async def get_connected_accounts(user_id: int = Depends(get_current_user_id), db: Session = Depends(get_db)):
    """Connected accounts without access tokens or webhook secrets."""
    return [PlatformAccountOut.from_account(account) for account in list_accounts(db, user_id)]
