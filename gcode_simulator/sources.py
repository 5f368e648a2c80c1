"""
G-code 바이트 청크 소스
Byte chunk sources for the streaming ingestor

인제스터는 소스의 종류를 모른다 - 순차적인 bytes 청크와 종료 신호만 필요하다.
전체 파일을 메모리에 올리지 않고 청크 단위로 읽는다.
"""
import asyncio
import os
from typing import AsyncIterator, Iterator, Optional

import httpx

DEFAULT_CHUNK_SIZE = 64 * 1024


def stream_from_bytes(data: bytes, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
    """
    메모리 버퍼를 청크로 분할

    Args:
        data: G-code 바이트
        chunk_size: 청크 크기

    Yields:
        bytes 청크
    """
    view = memoryview(data)
    for start in range(0, len(view), chunk_size):
        yield bytes(view[start:start + chunk_size])


def stream_from_string(content: str, chunk_size: int = DEFAULT_CHUNK_SIZE,
                       encoding: str = "utf-8") -> Iterator[bytes]:
    """문자열 G-code를 bytes 청크로 스트리밍"""
    return stream_from_bytes(content.encode(encoding), chunk_size)


async def stream_from_file(file_path: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
    """
    로컬 파일에서 청크 단위로 스트리밍

    읽기는 executor에서 실행되어 이벤트 루프를 막지 않는다.
    """
    loop = asyncio.get_running_loop()
    with open(file_path, 'rb') as f:
        while True:
            chunk = await loop.run_in_executor(None, f.read, chunk_size)
            if not chunk:
                break
            yield chunk


class UrlChunkSource:
    """
    URL에서 청크 단위로 스트리밍 (Supabase Storage 등)

    응답 헤더를 받은 뒤 Content-Length 를 total_bytes 로 노출한다.
    압축 전송(content-encoding)이면 디코딩 후 크기와 다르므로 None 유지.
    """

    def __init__(self, url: str, chunk_size: int = DEFAULT_CHUNK_SIZE, transport=None):
        self.url = url
        self.chunk_size = chunk_size
        self.transport = transport
        self.total_bytes: Optional[int] = None

    async def __aiter__(self):
        async with httpx.AsyncClient(transport=self.transport) as client:
            async with client.stream('GET', self.url) as response:
                response.raise_for_status()
                length = response.headers.get('content-length')
                if length and length.isdigit() and 'content-encoding' not in response.headers:
                    self.total_bytes = int(length)
                async for chunk in response.aiter_bytes(self.chunk_size):
                    yield chunk


def stream_from_url(url: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> UrlChunkSource:
    """URL 청크 소스 생성 - 크기는 응답 헤더에서 결정"""
    return UrlChunkSource(url, chunk_size)


async def stream_from_upload(upload, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
    """FastAPI UploadFile (또는 async read(size)를 가진 객체) 스트리밍"""
    while True:
        chunk = await upload.read(chunk_size)
        if not chunk:
            break
        yield chunk


def file_size(file_path: str) -> Optional[int]:
    try:
        return os.path.getsize(file_path)
    except OSError:
        return None
