"""
Data models for storage layer.

Defines the persisted records: generation events, daily usage partitions
and pending job markers.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ResourceType(str, Enum):
    """Category of generated media, tracked independently for quotas."""
    IMAGE = "image"
    VIDEO = "video"
    SPEECH = "speech"
    MUSIC = "music"


@dataclass(frozen=True)
class GenerationMetrics:
    """Metrics describing one generation, used for cost and usage accounting."""
    provider: str
    model_id: str
    resource_type: ResourceType
    count: int = 1
    duration_seconds: Optional[float] = None
    character_count: Optional[int] = None
    request_id: Optional[str] = None
    cached: bool = False
    prompt: Optional[str] = None


@dataclass(frozen=True)
class GenerationRecord:
    """Immutable record of a completed generation.

    ``estimated_cost`` is ``None`` when pricing could not be resolved, so an
    unknown cost is never confused with a free one.
    """
    id: str
    timestamp: str
    provider: str
    model_id: str
    resource_type: ResourceType
    estimated_cost: Optional[float]
    cached: bool
    count: int = 1
    duration_seconds: Optional[float] = None
    request_id: Optional[str] = None
    prompt: Optional[str] = None
    pricing_unavailable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["resource_type"] = self.resource_type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GenerationRecord":
        return cls(
            id=data["id"],
            timestamp=data["timestamp"],
            provider=data["provider"],
            model_id=data["model_id"],
            resource_type=ResourceType(data["resource_type"]),
            estimated_cost=data.get("estimated_cost"),
            cached=bool(data.get("cached", False)),
            count=data.get("count", 1),
            duration_seconds=data.get("duration_seconds"),
            request_id=data.get("request_id"),
            prompt=data.get("prompt"),
            pricing_unavailable=bool(data.get("pricing_unavailable", False)),
        )


@dataclass
class DailyUsageState:
    """Aggregated usage for one calendar partition.

    Mutated in memory by the ledger and flushed wholesale on save.
    """
    date: str
    images: int = 0
    videos: int = 0
    video_seconds: float = 0.0
    speech_minutes: float = 0.0
    music_minutes: float = 0.0
    total_cost: float = 0.0
    generations: List[GenerationRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "images": self.images,
            "videos": self.videos,
            "video_seconds": self.video_seconds,
            "speech_minutes": self.speech_minutes,
            "music_minutes": self.music_minutes,
            "total_cost": self.total_cost,
            "generations": [g.to_dict() for g in self.generations],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DailyUsageState":
        # Missing counters default to zero so older documents still load
        return cls(
            date=data["date"],
            images=data.get("images", 0),
            videos=data.get("videos", 0),
            video_seconds=data.get("video_seconds", 0.0),
            speech_minutes=data.get("speech_minutes", 0.0),
            music_minutes=data.get("music_minutes", 0.0),
            total_cost=data.get("total_cost", 0.0),
            generations=[
                GenerationRecord.from_dict(g) for g in data.get("generations", [])
            ],
        )


@dataclass(frozen=True)
class PendingJobRecord:
    """Durable marker for a job submitted but not yet confirmed complete."""
    request_id: str
    endpoint_id: str
    submitted_at: int  # epoch milliseconds

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingJobRecord":
        return cls(
            request_id=str(data["request_id"]),
            endpoint_id=str(data["endpoint_id"]),
            submitted_at=int(data["submitted_at"]),
        )
