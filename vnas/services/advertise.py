"""Announces the NAS on the local network so it shows up in OS "Network" browsers.

Two independent channels are used: an mDNS ``_http._tcp`` service record and SSDP/UPnP
``NOTIFY``/``M-SEARCH`` traffic pointing at a MediaServer device description. Either
channel failing is logged and tolerated; the file service never depends on this module.
"""
from __future__ import annotations

import asyncio
import logging
import socket
import struct
import uuid
from contextlib import suppress
from typing import Optional
from urllib.parse import quote
from xml.sax.saxutils import escape

from zeroconf import ServiceInfo
from zeroconf.asyncio import AsyncZeroconf

logger = logging.getLogger(__name__)

SSDP_ADDR = '239.255.255.250'
SSDP_PORT = 1900
SSDP_TARGETS = ('upnp:rootdevice', 'urn:schemas-upnp-org:device:MediaServer:1')
SSDP_MAX_AGE = 1800
MDNS_TYPE = '_http._tcp.local.'
SERVER_TOKEN = 'Python/3 UPnP/1.0 vNAS/1.0'

_XML_QUOTES = {'"': '&quot;', "'": '&apos;'}


def local_ipv4() -> str:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # connect() on a UDP socket only picks a route, nothing is sent
        sock.connect(('10.255.255.255', 1))
        return sock.getsockname()[0]
    except OSError:
        return '127.0.0.1'
    finally:
        sock.close()


def presentation_url(ip: str, port: int, token: str = '') -> str:
    url = f'http://{ip}:{port}/'
    if token:
        url = f"{url}?authtoken={quote(token, safe='')}"
    return url


def build_device_xml(name: str, url: str, udn: str) -> str:
    return (
        '<?xml version="1.0"?>\n'
        '<root xmlns="urn:schemas-upnp-org:device-1-0">\n'
        '  <specVersion><major>1</major><minor>0</minor></specVersion>\n'
        '  <device>\n'
        '    <deviceType>urn:schemas-upnp-org:device:MediaServer:1</deviceType>\n'
        f'    <friendlyName>{escape(name, _XML_QUOTES)}</friendlyName>\n'
        '    <manufacturer>Custom NAS</manufacturer>\n'
        '    <modelName>Python NAS</modelName>\n'
        f'    <UDN>{udn}</UDN>\n'
        f'    <presentationURL>{escape(url)}</presentationURL>\n'
        '  </device>\n'
        '</root>'
    )


def _message(lines: list[str]) -> bytes:
    return ('\r\n'.join(lines) + '\r\n\r\n').encode('utf-8')


def build_notify(target: str, udn: str, location: str, nts: str = 'ssdp:alive') -> bytes:
    lines = [
        'NOTIFY * HTTP/1.1',
        f'HOST: {SSDP_ADDR}:{SSDP_PORT}',
        f'NT: {target}',
        f'NTS: {nts}',
        f'USN: {udn}::{target}',
    ]
    if nts == 'ssdp:alive':
        lines += [
            f'CACHE-CONTROL: max-age={SSDP_MAX_AGE}',
            f'LOCATION: {location}',
            f'SERVER: {SERVER_TOKEN}',
        ]
    return _message(lines)


def build_search_response(target: str, udn: str, location: str) -> bytes:
    return _message(
        [
            'HTTP/1.1 200 OK',
            f'CACHE-CONTROL: max-age={SSDP_MAX_AGE}',
            'EXT:',
            f'LOCATION: {location}',
            f'SERVER: {SERVER_TOKEN}',
            f'ST: {target}',
            f'USN: {udn}::{target}',
        ]
    )


def parse_search_target(data: bytes) -> Optional[str]:
    """ST header of an ``M-SEARCH`` request, or None for any other datagram."""
    lines = data.decode('utf-8', errors='replace').splitlines()
    if not lines or not lines[0].upper().startswith('M-SEARCH'):
        return None
    for line in lines[1:]:
        key, sep, value = line.partition(':')
        if sep and key.strip().upper() == 'ST':
            return value.strip()
    return None


class SsdpProtocol(asyncio.DatagramProtocol):
    def __init__(self, udn: str, location: str):
        self.udn = udn
        self.location = location
        self.transport: Optional[asyncio.DatagramTransport] = None

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data: bytes, addr):
        target = parse_search_target(data)
        if target is None or self.transport is None:
            return
        matches = SSDP_TARGETS if target == 'ssdp:all' else [t for t in SSDP_TARGETS if t == target]
        for match in matches:
            self.transport.sendto(build_search_response(match, self.udn, self.location), addr)

    def announce(self, nts: str = 'ssdp:alive') -> None:
        if self.transport is None:
            return
        for target in SSDP_TARGETS:
            self.transport.sendto(build_notify(target, self.udn, self.location, nts), (SSDP_ADDR, SSDP_PORT))


def _multicast_socket() -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(('', SSDP_PORT))
        membership = struct.pack('4sl', socket.inet_aton(SSDP_ADDR), socket.INADDR_ANY)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, membership)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 2)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


class Advertiser:
    def __init__(
        self,
        name: str,
        port: int,
        description: str = '',
        token: str = '',
        host_ip: Optional[str] = None,
        interval: float = 30,
    ):
        self.name = name
        self.port = port
        self.description = description
        self.token = token
        self.ip = host_ip or local_ipv4()
        self.interval = interval
        self.udn = f'uuid:vnas-{uuid.uuid4()}'
        self.presentation_url = presentation_url(self.ip, port, token)
        self.location = f'http://{self.ip}:{port}/device.xml'
        self.device_xml = build_device_xml(name, self.presentation_url, self.udn)

        self._zeroconf: Optional[AsyncZeroconf] = None
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._protocol: Optional[SsdpProtocol] = None
        self._task: Optional[asyncio.Task] = None

    def txt_records(self) -> dict[str, str]:
        txt = {'description': self.description, 'path': '/'}
        if self.token:
            txt['authtoken'] = self.token
        return txt

    def service_info(self) -> ServiceInfo:
        return ServiceInfo(
            MDNS_TYPE,
            f'{self.name}.{MDNS_TYPE}',
            addresses=[socket.inet_aton(self.ip)],
            port=self.port,
            properties=self.txt_records(),
            server=f'{socket.gethostname()}.local.',
        )

    async def start(self) -> None:
        logger.info('Advertising %s at %s', self.name, self.presentation_url)
        await self._start_mdns()
        await self._start_ssdp()

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._protocol is not None:
            self._protocol.announce('ssdp:byebye')
            self._protocol = None
        if self._transport is not None:
            self._transport.close()
            self._transport = None
        if self._zeroconf is not None:
            await self._zeroconf.async_unregister_all_services()
            await self._zeroconf.async_close()
            self._zeroconf = None
        logger.info('Stopped advertising %s', self.name)

    async def _start_mdns(self) -> None:
        zc: Optional[AsyncZeroconf] = None
        try:
            zc = AsyncZeroconf()
            # the returned task completes once the announcement has gone out
            registration = await zc.async_register_service(self.service_info())
            await registration
        except Exception as exc:
            # zeroconf raises OSError as well as its own error types here
            logger.warning('Failed to publish mDNS: %s', exc)
            if zc is not None:
                await zc.async_close()
            return
        self._zeroconf = zc
        logger.info('Published mDNS (%s)', MDNS_TYPE)

    async def _start_ssdp(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            sock = _multicast_socket()
            transport, protocol = await loop.create_datagram_endpoint(
                lambda: SsdpProtocol(self.udn, self.location), sock=sock
            )
        except OSError as exc:
            logger.warning('Failed to start SSDP/UPnP: %s', exc)
            return
        self._transport, self._protocol = transport, protocol
        self._task = asyncio.create_task(self._announce_forever())
        logger.info('SSDP/UPnP adverts started')

    async def _announce_forever(self) -> None:
        while self._protocol is not None:
            self._protocol.announce()
            await asyncio.sleep(self.interval)
