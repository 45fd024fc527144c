# eotracker/store.py
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple, TypeVar

import boto3

from .config import Settings
from .db import DatabasePool
from .errors import ChunkWriteError, PersistenceError
from .models import CanonicalDocument

log = logging.getLogger(__name__)

T = TypeVar("T")

DYNAMO_BATCH_LIMIT = 25


# =========================
# Dedup
# =========================

@dataclass
class KnownKeys:
    urls: Set[str] = field(default_factory=set)
    identifiers: Set[str] = field(default_factory=set)

    def contains(self, doc: CanonicalDocument) -> bool:
        return doc.url in self.urls or doc.identifier in self.identifiers

    def add(self, doc: CanonicalDocument) -> None:
        self.urls.add(doc.url)
        self.identifiers.add(doc.identifier)

    def __len__(self) -> int:
        return len(self.urls | self.identifiers)


@dataclass
class Partition:
    new: List[CanonicalDocument] = field(default_factory=list)
    existing: List[CanonicalDocument] = field(default_factory=list)


def partition_documents(candidates: Iterable[CanonicalDocument], known: KnownKeys) -> Partition:
    """
    Split candidates into new (neither url nor identifier known) and existing.
    Repeats inside the batch are dropped; the first occurrence wins.
    """
    part = Partition()
    batch = KnownKeys()
    for doc in candidates:
        if batch.contains(doc):
            continue
        batch.add(doc)
        if known.contains(doc):
            doc.is_new = False
            part.existing.append(doc)
        else:
            part.new.append(doc)
    return part


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    if size <= 0:
        raise ValueError("chunk size must be > 0")
    for i in range(0, len(items), size):
        yield list(items[i : i + size])


# =========================
# Store contract
# =========================

class DocumentStore:
    name = "base"

    async def load_known_keys(self, floor: Optional[date] = None) -> KnownKeys:
        raise NotImplementedError

    async def insert_documents(self, documents: Sequence[CanonicalDocument]) -> int:
        raise NotImplementedError

    async def update_documents(self, documents: Sequence[CanonicalDocument]) -> int:
        raise NotImplementedError

    async def count(self) -> int:
        raise NotImplementedError

    async def close(self) -> None:
        pass


# =========================
# Relational store (Postgres)
# =========================

SCHEMA_SQL = """
create table if not exists executive_orders (
    id bigserial primary key,
    identifier text not null,
    type text not null,
    number text,
    title text not null,
    summary text not null default '',
    content text not null default '',
    date date not null,
    url text not null unique,
    created_at timestamptz not null default now(),
    updated_at timestamptz not null default now()
);
create index if not exists executive_orders_identifier_idx on executive_orders (identifier);
create index if not exists executive_orders_date_idx on executive_orders (date desc);

create table if not exists categories (
    id bigserial primary key,
    name text not null unique
);
create table if not exists agencies (
    id bigserial primary key,
    name text not null unique
);
create table if not exists order_categories (
    order_id bigint not null references executive_orders(id) on delete cascade,
    category_id bigint not null references categories(id),
    primary key (order_id, category_id)
);
create table if not exists order_agencies (
    order_id bigint not null references executive_orders(id) on delete cascade,
    agency_id bigint not null references agencies(id),
    primary key (order_id, agency_id)
);
"""

KNOWN_KEYS_SQL = "select url, identifier from executive_orders {where}"

INSERT_ORDER_SQL = """
insert into executive_orders (identifier, type, number, title, summary, content, date, url)
values ($1, $2, $3, $4, $5, $6, $7, $8)
returning id
"""

UPDATE_ORDER_SQL = """
update executive_orders
set type = $2, number = $3, title = $4, summary = $5, content = $6, date = $7, updated_at = now()
where id = $1
"""

# "do update" so that returning yields the id for pre-existing labels too
UPSERT_LABEL_SQL = """
insert into {table} (name) values ($1)
on conflict (name) do update set name = excluded.name
returning id
"""

DUPLICATE_URLS_SQL = """
select url, count(*) as count, array_agg(id order by id) as ids, array_agg(title order by id) as titles
from executive_orders
group by url
having count(*) > 1
"""


class PostgresDocumentStore(DocumentStore):
    name = "postgres"

    def __init__(self, pool: DatabasePool):
        self.pool = pool

    async def ensure_schema(self) -> None:
        async with self.pool.connection() as conn:
            await conn.execute(SCHEMA_SQL)

    async def load_known_keys(self, floor: Optional[date] = None) -> KnownKeys:
        async with self.pool.connection() as conn:
            if floor is not None:
                rows = await conn.fetch(KNOWN_KEYS_SQL.format(where="where date >= $1"), floor)
            else:
                rows = await conn.fetch(KNOWN_KEYS_SQL.format(where=""))
        known = KnownKeys()
        for r in rows:
            if r["url"]:
                known.urls.add(r["url"])
            if r["identifier"]:
                known.identifiers.add(r["identifier"])
        log.info("[store][pg] %d known urls, %d known identifiers", len(known.urls), len(known.identifiers))
        return known

    async def _label_ids(self, conn, table: str, names: Iterable[str]) -> Dict[str, int]:
        ids: Dict[str, int] = {}
        for name in sorted(set(names)):
            ids[name] = await conn.fetchval(UPSERT_LABEL_SQL.format(table=table), name)
        return ids

    async def _link_labels(self, conn, order_id: int, doc: CanonicalDocument,
                           category_ids: Dict[str, int], agency_ids: Dict[str, int]) -> None:
        if doc.categories:
            await conn.executemany(
                "insert into order_categories (order_id, category_id) values ($1, $2) on conflict do nothing",
                [(order_id, category_ids[c]) for c in doc.categories],
            )
        if doc.agencies:
            await conn.executemany(
                "insert into order_agencies (order_id, agency_id) values ($1, $2) on conflict do nothing",
                [(order_id, agency_ids[a]) for a in doc.agencies],
            )

    async def insert_documents(self, documents: Sequence[CanonicalDocument]) -> int:
        """All documents of one call commit together with their labels, or none do."""
        if not documents:
            return 0
        try:
            async with self.pool.connection() as conn:
                async with conn.transaction():
                    category_ids = await self._label_ids(conn, "categories", (c for d in documents for c in d.categories))
                    agency_ids = await self._label_ids(conn, "agencies", (a for d in documents for a in d.agencies))
                    for doc in documents:
                        order_id = await conn.fetchval(
                            INSERT_ORDER_SQL,
                            doc.identifier, doc.type.value, doc.number, doc.title,
                            doc.summary or "", doc.content or "", doc.date, doc.url,
                        )
                        await self._link_labels(conn, order_id, doc, category_ids, agency_ids)
        except Exception as e:
            log.error("[store][pg] insert transaction of %d documents rolled back: %s", len(documents), e)
            raise PersistenceError(f"insert of {len(documents)} documents failed: {type(e).__name__}: {e}") from e
        log.info("[store][pg] inserted %d documents", len(documents))
        return len(documents)

    async def update_documents(self, documents: Sequence[CanonicalDocument]) -> int:
        """Update stored rows (matched by url, then identifier) whose text differs."""
        if not documents:
            return 0
        updated = 0
        try:
            async with self.pool.connection() as conn:
                async with conn.transaction():
                    category_ids = await self._label_ids(conn, "categories", (c for d in documents for c in d.categories))
                    agency_ids = await self._label_ids(conn, "agencies", (a for d in documents for a in d.agencies))
                    for doc in documents:
                        row = await conn.fetchrow(
                            """
                            select id, title, summary, content from executive_orders
                            where url = $1 or identifier = $2
                            order by (url = $1) desc
                            limit 1
                            """,
                            doc.url, doc.identifier,
                        )
                        if row is None:
                            continue
                        if (row["title"], row["summary"], row["content"]) == (doc.title, doc.summary, doc.content):
                            continue
                        await conn.execute(
                            UPDATE_ORDER_SQL,
                            row["id"], doc.type.value, doc.number, doc.title,
                            doc.summary or "", doc.content or "", doc.date,
                        )
                        await self._link_labels(conn, row["id"], doc, category_ids, agency_ids)
                        updated += 1
        except Exception as e:
            raise PersistenceError(f"update of {len(documents)} documents failed: {type(e).__name__}: {e}") from e
        log.info("[store][pg] updated %d/%d existing documents", updated, len(documents))
        return updated

    async def count(self) -> int:
        async with self.pool.connection() as conn:
            return int(await conn.fetchval("select count(*) from executive_orders"))

    async def find_duplicate_urls(self) -> List[Dict[str, Any]]:
        async with self.pool.connection() as conn:
            rows = await conn.fetch(DUPLICATE_URLS_SQL)
        return [dict(r) for r in rows]

    async def close(self) -> None:
        await self.pool.close()


# =========================
# Key-value store (DynamoDB)
# =========================

class DynamoDocumentStore(DocumentStore):
    """
    Bulk puts through DynamoDB BatchWriteItem, at most 25 items per request.
    Each chunk is its own request; a failing chunk stops the run but chunks
    already written stay written.
    """

    name = "dynamodb"

    def __init__(
        self,
        table_name: str,
        *,
        region: str = "us-east-2",
        resource: Any = None,
        chunk_size: int = DYNAMO_BATCH_LIMIT,
        unprocessed_retries: int = 3,
        retry_delay: float = 0.5,
    ):
        if resource is None:
            resource = boto3.resource("dynamodb", region_name=region)
        self.resource = resource
        self.table_name = table_name
        self.table = resource.Table(table_name)
        self.chunk_size = min(chunk_size, DYNAMO_BATCH_LIMIT)
        self.unprocessed_retries = unprocessed_retries
        self.retry_delay = retry_delay

    @staticmethod
    def to_item(doc: CanonicalDocument, now_iso: str) -> Dict[str, Any]:
        item = doc.to_item()
        item.update({
            "pk": doc.identifier,
            "sk": doc.url,
            "createdAt": now_iso,
            "updatedAt": now_iso,
        })
        return item

    def _scan_all(self, **kwargs) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        while True:
            resp = self.table.scan(**kwargs)
            items.extend(resp.get("Items") or [])
            start = resp.get("LastEvaluatedKey")
            if not start:
                return items
            kwargs["ExclusiveStartKey"] = start

    async def load_known_keys(self, floor: Optional[date] = None) -> KnownKeys:
        kwargs: Dict[str, Any] = {
            "ProjectionExpression": "#u, identifier, #d",
            "ExpressionAttributeNames": {"#u": "url", "#d": "date"},
        }
        rows = await asyncio.to_thread(self._scan_all, **kwargs)
        known = KnownKeys()
        for r in rows:
            if floor is not None and str(r.get("date") or "") < floor.isoformat():
                continue
            if r.get("url"):
                known.urls.add(r["url"])
            if r.get("identifier"):
                known.identifiers.add(r["identifier"])
        log.info("[store][ddb] %d known urls, %d known identifiers", len(known.urls), len(known.identifiers))
        return known

    def _write_chunk(self, requests: List[Dict[str, Any]]) -> None:
        pending = {self.table_name: requests}
        for attempt in range(self.unprocessed_retries + 1):
            resp = self.resource.batch_write_item(RequestItems=pending)
            pending = resp.get("UnprocessedItems") or {}
            if not pending:
                return
            time.sleep(self.retry_delay * (2 ** attempt))
        left = sum(len(v) for v in pending.values())
        raise PersistenceError(f"{left} items still unprocessed after {self.unprocessed_retries} retries")

    def _pack(self, groups: List[List[Dict[str, Any]]]) -> List[List[Dict[str, Any]]]:
        # a document's delete+put pair never straddles two requests
        chunks: List[List[Dict[str, Any]]] = []
        current: List[Dict[str, Any]] = []
        for group in groups:
            if current and len(current) + len(group) > self.chunk_size:
                chunks.append(current)
                current = []
            current.extend(group)
        if current:
            chunks.append(current)
        return chunks

    async def _write_chunks(self, chunks: List[List[Dict[str, Any]]]) -> None:
        for idx, chunk in enumerate(chunks):
            try:
                await asyncio.to_thread(self._write_chunk, chunk)
            except Exception as e:
                log.error("[store][ddb] chunk %d/%d (%d items) failed: %s", idx + 1, len(chunks), len(chunk), e)
                raise ChunkWriteError(idx, len(chunk), len(chunks), e) from e
            log.info("[store][ddb] wrote chunk %d/%d (%d items)", idx + 1, len(chunks), len(chunk))

    async def insert_documents(self, documents: Sequence[CanonicalDocument]) -> int:
        if not documents:
            return 0
        now_iso = datetime.now(timezone.utc).isoformat()
        requests = [{"PutRequest": {"Item": self.to_item(d, now_iso)}} for d in documents]
        await self._write_chunks(list(chunked(requests, self.chunk_size)))
        return len(documents)

    def _stored_by_key(self) -> Tuple[Dict[str, Dict[str, Any]], Dict[str, Dict[str, Any]]]:
        rows = self._scan_all(
            ProjectionExpression="pk, sk, #u, #i, #t, #s, #c, createdAt",
            ExpressionAttributeNames={"#u": "url", "#i": "identifier", "#t": "title", "#s": "summary", "#c": "content"},
        )
        by_url = {r["url"]: r for r in rows if r.get("url")}
        by_identifier = {r["identifier"]: r for r in rows if r.get("identifier")}
        return by_url, by_identifier

    async def update_documents(self, documents: Sequence[CanonicalDocument]) -> int:
        """
        Replace stored items (matched by url, then identifier) whose text differs.
        When the document's key changed, the old item is deleted in the same
        request as the new one is put.
        """
        if not documents:
            return 0
        by_url, by_identifier = await asyncio.to_thread(self._stored_by_key)
        now_iso = datetime.now(timezone.utc).isoformat()

        groups: List[List[Dict[str, Any]]] = []
        for doc in documents:
            stored = by_url.get(doc.url) or by_identifier.get(doc.identifier)
            if stored is None:
                continue
            if (stored.get("title"), stored.get("summary"), stored.get("content")) == (doc.title, doc.summary, doc.content):
                continue
            item = self.to_item(doc, now_iso)
            item["createdAt"] = stored.get("createdAt") or now_iso
            group = [{"PutRequest": {"Item": item}}]
            old_key = {"pk": stored.get("pk"), "sk": stored.get("sk")}
            if old_key != {"pk": item["pk"], "sk": item["sk"]}:
                group.insert(0, {"DeleteRequest": {"Key": old_key}})
            groups.append(group)

        if groups:
            await self._write_chunks(self._pack(groups))
        log.info("[store][ddb] updated %d/%d existing documents", len(groups), len(documents))
        return len(groups)

    async def count(self) -> int:
        def _count() -> int:
            total = 0
            kwargs: Dict[str, Any] = {"Select": "COUNT"}
            while True:
                resp = self.table.scan(**kwargs)
                total += int(resp.get("Count") or 0)
                start = resp.get("LastEvaluatedKey")
                if not start:
                    return total
                kwargs["ExclusiveStartKey"] = start

        return await asyncio.to_thread(_count)


def build_store(settings: Settings) -> DocumentStore:
    if settings.store_backend == "dynamodb":
        return DynamoDocumentStore(settings.dynamodb_table, region=settings.aws_region)
    return PostgresDocumentStore(DatabasePool(settings.database_url))
