"""
Shared fixtures: a file-backed SQLite database per test and feed file builders.
"""
from pathlib import Path
from typing import Callable

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from catalog_ingest.config.settings import (
    ApplicationSettings,
    DatabaseSettings,
    IngestionSettings,
)
from catalog_ingest.db import create_session_factory, enable_sqlite_savepoints
from catalog_ingest.models.database import Base

VALID_EAN = "4006381333931"


def product_xml(
    code: str = "P-001",
    name: str = "Claw hammer",
    category_path: str = "Tools/Hand Tools/Hammers",
    producer: str = "Acme",
    vat: str = "21",
    gross: str = "121.00",
    ean: str = VALID_EAN,
    url: str = "example.com/p/1",
    image: str = "https://cdn.example.com/1.jpg",
    weight: str = "0,5",
) -> str:
    """One product in the sizes layout with a direct price object"""
    code_attribute = f' code="{code}"' if code else ""
    return f"""
    <product{code_attribute} vat="{vat}">
      <producer name="{producer}"/>
      <category id="c-{code}" path="{category_path}"/>
      <unit moq="1">szt</unit>
      <ean>{ean}</ean>
      <url>{url}</url>
      <description>
        <name xml:lang="en">{name}</name>
        <short>Short text</short>
        <long>Long text</long>
      </description>
      <sizes>
        <size code="{code}-M" weight="{weight}" grossWeight="0.6">
          <stock quantity="5"/>
          <price gross="{gross}"/>
          <srp gross="150.00"/>
        </size>
      </sizes>
      <images><large><image url="{image}"/></large></images>
    </product>"""


def feed_xml(products: list[str], root: str = "offer") -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        f"<{root}><products>{''.join(products)}</products></{root}>"
    )


@pytest.fixture
def product() -> Callable[..., str]:
    """Builder of product elements"""
    return product_xml


@pytest.fixture
def write_feed(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing a feed file under tmp_path"""

    def _write(products: list[str], root: str = "offer", name: str = "feed.xml") -> Path:
        path = tmp_path / name
        path.write_text(feed_xml(products, root), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}"


@pytest.fixture
async def bare_engine(database_url):
    """Engine on an empty database"""
    engine = create_async_engine(database_url)
    enable_sqlite_savepoints(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def engine(bare_engine):
    """Engine on a database with the full schema"""
    async with bare_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return bare_engine


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def settings(database_url) -> ApplicationSettings:
    """Settings pointing at the test database with no backoff delay"""
    return ApplicationSettings(
        database=DatabaseSettings(database_url=database_url),
        ingestion=IngestionSettings(backoff_base_seconds=0.0, max_retries=2),
    )
