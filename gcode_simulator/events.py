"""
Engine Event System for Real-time Updates

콜백 구독 + 구독자별 asyncio 큐 (SSE 스트림용)
"""
import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class EngineEvent:
    """이벤트 기본 클래스"""
    type: str = field(init=False, default="event")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class StateChanged(EngineEvent):
    """재생 상태 전이"""
    previous: str
    current: str
    error_message: Optional[str] = None
    type: str = field(init=False, default="state_changed")


@dataclass
class SegmentsEmitted(EngineEvent):
    """틱/리플레이 배치에서 생성된 세그먼트 수"""
    count: int
    command_index: int
    type: str = field(init=False, default="segments_emitted")


@dataclass
class GeometryChanged(EngineEvent):
    """지오메트리 버퍼 변경 (배치 단위)"""
    extrusion_points: int
    travel_points: int
    version: int
    type: str = field(init=False, default="geometry_changed")


@dataclass
class LoadProgress(EngineEvent):
    progress: float             # 0 ~ 100
    loaded_commands: int
    is_streaming: bool
    type: str = field(init=False, default="load_progress")


@dataclass
class SeekProgress(EngineEvent):
    target: int
    progress: float             # 0 ~ 100
    phase: str                  # waiting | replaying | done
    type: str = field(init=False, default="seek_progress")


# 콜백 타입 정의
EventCallback = Callable[[EngineEvent], None]


class EventBus:
    """
    엔진 이벤트 발행

    - subscribe(callback): 동기 콜백, 해제 함수 반환
    - queue(): 구독자별 bounded asyncio.Queue (가득 차면 가장 오래된 이벤트 제거)
    """

    def __init__(self, queue_size: int = 1000):
        self.queue_size = queue_size
        self._callbacks: List[EventCallback] = []
        self._queues: List[asyncio.Queue] = []
        self.published = 0
        self.dropped = 0

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def unsubscribe():
            if callback in self._callbacks:
                self._callbacks.remove(callback)
        return unsubscribe

    def queue(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._queues.append(q)
        return q

    def close_queue(self, q: asyncio.Queue):
        if q in self._queues:
            self._queues.remove(q)

    def publish(self, event: EngineEvent):
        self.published += 1
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception as e:
                # 구독자 오류가 엔진을 멈추지 않도록
                logger.warning(f"[Events] Subscriber failed on {event.type}: {e}")

        for q in list(self._queues):
            if q.full():
                try:
                    q.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass
            q.put_nowait(event)

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks) + len(self._queues)

    def __repr__(self):
        return f"EventBus(subscribers={self.subscriber_count}, published={self.published})"
