from __future__ import annotations

import urllib.parse
from typing import AsyncIterator, Optional

from fastapi import APIRouter, File, HTTPException, Query, UploadFile
from fastapi.responses import Response, StreamingResponse

from ..config import settings
from ..schemas import ApiResponse, FileActionRequest, MkdirRequest, MoveRequest
from ..services.errors import FileOpsError
from ..services.file_ops import FileOps, UploadItem

router = APIRouter(prefix='/api/files', tags=['files'])
ops = FileOps(
    settings.storage_root,
    max_upload_bytes=settings.max_upload_bytes,
    preview_max_bytes=settings.preview_max_bytes,
    chunk_size=settings.stream_chunk_bytes,
)


def _http_error(exc: FileOpsError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=str(exc))


def _content_disposition(kind: str, filename: str) -> str:
    try:
        filename.encode('ascii')
        quoted = filename.replace('\\', '\\\\').replace('"', '\\"')
        return f'{kind}; filename="{quoted}"'
    except UnicodeEncodeError:
        return f"{kind}; filename*=UTF-8''{urllib.parse.quote(filename, safe='')}"


async def _read_chunks(file: UploadFile, chunk_size: int) -> AsyncIterator[bytes]:
    while chunk := await file.read(chunk_size):
        yield chunk


@router.get('/list')
def list_files(path: str = Query(default='')):
    try:
        items = ops.list_dir(path)
    except FileOpsError as exc:
        raise _http_error(exc)
    return {'ok': True, 'data': [item.model_dump() for item in items]}


@router.get('/stat')
def stat(path: str = Query(default='')):
    try:
        info = ops.stat(path)
    except FileOpsError as exc:
        raise _http_error(exc)
    return {'ok': True, 'data': info.model_dump()}


@router.post('/upload')
async def upload(path: str = Query(default=''), files: Optional[list[UploadFile]] = File(default=None)):
    if not files:
        raise HTTPException(status_code=400, detail='No files uploaded')

    items = [UploadItem(name=f.filename or '', chunks=_read_chunks(f, ops.chunk_size)) for f in files]
    try:
        uploaded = await ops.upload_many(path, items)
    except FileOpsError as exc:
        raise _http_error(exc)
    return ApiResponse(ok=True, message='Uploaded', data=[item.model_dump() for item in uploaded])


@router.get('/download')
def download(path: str = Query(...)):
    try:
        stream = ops.open_download(path)
    except FileOpsError as exc:
        raise _http_error(exc)

    headers = {
        'Content-Disposition': _content_disposition('attachment', stream.name),
        'Content-Length': str(stream.size),
    }
    return StreamingResponse(stream.iter_bytes(), media_type=stream.content_type, headers=headers)


@router.get('/preview')
async def preview(path: str = Query(...)):
    try:
        result = await ops.preview(path)
    except FileOpsError as exc:
        raise _http_error(exc)

    headers = {'Content-Disposition': _content_disposition('inline', result.name)}
    if result.inline:
        return Response(content=result.content, media_type=result.content_type, headers=headers)
    headers['Content-Length'] = str(result.size)
    return StreamingResponse(result.stream.iter_bytes(), media_type=result.content_type, headers=headers)


@router.post('/mkdir')
def mkdir(payload: MkdirRequest):
    if not payload.name:
        raise HTTPException(status_code=400, detail='name is required')
    try:
        info = ops.mkdir(payload.path, payload.name)
    except FileOpsError as exc:
        raise _http_error(exc)
    return ApiResponse(ok=True, message='Folder created', data=info.model_dump())


@router.post('/rename')
def rename(payload: FileActionRequest):
    if not payload.path or not payload.new_name:
        raise HTTPException(status_code=400, detail='path and new_name are required')
    try:
        info = ops.rename(payload.path, payload.new_name)
    except FileOpsError as exc:
        raise _http_error(exc)
    return ApiResponse(ok=True, message='Renamed', data=info.model_dump())


@router.post('/move')
def move(payload: MoveRequest):
    if not payload.source or payload.target is None:
        raise HTTPException(status_code=400, detail='source and target are required')
    try:
        info = ops.move(payload.source, payload.target)
    except FileOpsError as exc:
        raise _http_error(exc)
    return ApiResponse(ok=True, message='Moved', data=info.model_dump())


@router.post('/delete')
def delete(payload: FileActionRequest):
    if not payload.path:
        raise HTTPException(status_code=400, detail='path is required')
    try:
        ops.delete(payload.path)
    except FileOpsError as exc:
        raise _http_error(exc)
    return ApiResponse(ok=True, message='Deleted')
