from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from wordlink_app.schemas.link import (
    IdentifierAvailability,
    IdentifierCreate,
    IdentifierList,
    IdentifierResponse,
    IdentifierUsage,
    Quota,
)
from wordlink_app.services.identifier_service import IdentifierService
from wordlink_app.dependencies import get_identifier_service, get_quota
from wordlink_app.exceptions import (
    IdentifierInUse,
    IdentifierNotOwned,
    IdentifierTaken,
    InvalidLink,
    NotFound,
    QuotaExceeded,
)

router = APIRouter(prefix="/identifiers", tags=["identifiers"])


def _not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Identifier not found")


@router.post("", response_model=IdentifierResponse, status_code=status.HTTP_201_CREATED)
async def claim_identifier(
    data: IdentifierCreate,
    identifier_service: IdentifierService = Depends(get_identifier_service),
    quota: Quota = Depends(get_quota)
):
    """Claim a namespace for keyword links"""
    try:
        return identifier_service.claim(data, quota=quota)
    except IdentifierTaken:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Identifier already taken: {data.name}")
    except QuotaExceeded as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except InvalidLink as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


@router.get("", response_model=IdentifierList)
async def list_identifiers(
    owner_id: str = Query(..., min_length=1, max_length=64),
    identifier_service: IdentifierService = Depends(get_identifier_service),
    quota: Quota = Depends(get_quota)
):
    """An owner's identifiers with how many links and clicks each carries"""
    identifiers = [
        IdentifierUsage(
            name=identifier.name,
            owner_id=identifier.owner_id,
            created_at=identifier.created_at,
            links_count=links_count,
            total_clicks=total_clicks,
        )
        for identifier, links_count, total_clicks in identifier_service.usage_for_owner(owner_id)
    ]
    return IdentifierList(identifiers=identifiers, count=len(identifiers), max_allowed=quota.max_identifiers)


@router.get("/check/{name}", response_model=IdentifierAvailability)
async def check_identifier(
    name: str,
    identifier_service: IdentifierService = Depends(get_identifier_service)
):
    """Whether a name can be claimed, and why not"""
    try:
        return identifier_service.check(name)
    except InvalidLink as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/{name}", response_model=IdentifierResponse)
async def get_identifier(
    name: str,
    identifier_service: IdentifierService = Depends(get_identifier_service)
):
    try:
        return identifier_service.get(name)
    except NotFound:
        raise _not_found()


@router.delete("/{name}", status_code=status.HTTP_204_NO_CONTENT)
async def release_identifier(
    name: str,
    owner_id: str = Query(..., min_length=1, max_length=64),
    identifier_service: IdentifierService = Depends(get_identifier_service)
):
    """Give a namespace back; refused while active links use it"""
    try:
        identifier_service.release(name, owner_id)
    except NotFound:
        raise _not_found()
    except IdentifierNotOwned:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Identifier is owned by another account")
    except IdentifierInUse as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return Response(status_code=status.HTTP_204_NO_CONTENT)
