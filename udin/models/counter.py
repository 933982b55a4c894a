from beanie import Document
from pymongo import ReturnDocument


class Counter(Document):
    """Named monotonically increasing sequence."""

    name: str
    value: int = 0

    class Settings:
        name = "counters"
        indexes = [[("name", 1)]]


async def next_sequence(name: str) -> int:
    """Atomic $inc with upsert; safe under concurrent callers."""
    doc = await Counter.get_motor_collection().find_one_and_update(
        {"name": name},
        {"$inc": {"value": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return int(doc["value"])
