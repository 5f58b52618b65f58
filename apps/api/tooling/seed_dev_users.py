"""Seed one development user per persona into the API database."""

from __future__ import annotations

import asyncio
import os
from typing import TypedDict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from kfactor_api.core.settings import settings
from kfactor_api.models.user import PersonaEnum, User


class SeedUser(TypedDict):
    email: str
    display_name: str
    persona: str


DEV_USERS: list[SeedUser] = [
    {
        "email": os.getenv("DEV_STUDENT_EMAIL", "student@kfactor.dev").lower(),
        "display_name": "Student QA",
        "persona": PersonaEnum.STUDENT.value,
    },
    {
        "email": os.getenv("DEV_PARENT_EMAIL", "parent@kfactor.dev").lower(),
        "display_name": "Parent QA",
        "persona": PersonaEnum.PARENT.value,
    },
    {
        "email": os.getenv("DEV_TUTOR_EMAIL", "tutor@kfactor.dev").lower(),
        "display_name": "Tutor QA",
        "persona": PersonaEnum.TUTOR.value,
    },
]


async def seed_users(session: AsyncSession) -> list[User]:
    seeded: list[User] = []
    for user in DEV_USERS:
        with session.no_autoflush:
            existing = await session.execute(select(User).where(User.email == user["email"]))
        record = existing.scalar_one_or_none()

        if record:
            record.display_name = user["display_name"]
            record.persona = user["persona"]
        else:
            record = User(
                email=user["email"],
                display_name=user["display_name"],
                persona=user["persona"],
            )
            session.add(record)
        seeded.append(record)
    await session.commit()
    return seeded


async def main() -> None:
    engine = create_async_engine(settings.database_url, future=True)
    session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        async with session_factory() as session:
            users = await seed_users(session)
        for user in users:
            print(f"{user.persona:<8} {user.email:<28} X-Session-User: {user.id}")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
