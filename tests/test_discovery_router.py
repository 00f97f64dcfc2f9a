from __future__ import annotations

from types import SimpleNamespace

import pytest
from fastapi import HTTPException

from vnas.routers import discovery


def _request(advertiser):
    return SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace(advertiser=advertiser)))


def test_device_xml_served_when_advertising():
    response = discovery.device_description(_request(SimpleNamespace(device_xml='<root/>')))

    assert response.body == b'<root/>'
    assert response.media_type == 'application/xml'


def test_device_xml_404_when_disabled():
    with pytest.raises(HTTPException) as exc:
        discovery.device_description(_request(None))

    assert exc.value.status_code == 404
