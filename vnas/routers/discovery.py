from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response

router = APIRouter(tags=['discovery'])


@router.get('/device.xml')
def device_description(request: Request):
    advertiser = getattr(request.app.state, 'advertiser', None)
    if advertiser is None:
        raise HTTPException(status_code=404, detail='Discovery is disabled')
    return Response(content=advertiser.device_xml, media_type='application/xml')
