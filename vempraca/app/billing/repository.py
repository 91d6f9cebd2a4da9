"""Persistence layer for directory listings stored in Supabase Postgres."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from .exceptions import UpstreamTimeout, UpstreamUnavailable
from .models import BusinessListing

_LISTING_COLUMNS = "id, usuario_id, is_visible, stripe_subscription_id, stripe_customer_id, grandfathered"


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None) -> Iterator[tuple[PgConnection, bool]]:
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_listing(row: dict) -> BusinessListing:
    return BusinessListing(
        listing_id=str(row["id"]),
        owner_id=str(row["usuario_id"]),
        is_visible=bool(row.get("is_visible")),
        subscription_id=row.get("stripe_subscription_id"),
        customer_id=row.get("stripe_customer_id"),
        grandfathered=bool(row.get("grandfathered")),
    )


class PostgresListingRepository:
    """Concrete repository reading and updating the ``negocios`` table."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        try:
            with managed_connection(self._conn) as (connection, _managed):
                cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
                try:
                    yield cursor
                finally:
                    cursor.close()
        except psycopg2.errors.QueryCanceled as exc:
            raise UpstreamTimeout(message="Directory store query timed out") from exc
        except psycopg2.OperationalError as exc:
            if "timeout" in str(exc).lower():
                raise UpstreamTimeout(message="Directory store connection timed out") from exc
            raise UpstreamUnavailable(message="Directory store unavailable") from exc

    def get_listing(self, listing_id: str) -> Optional[BusinessListing]:
        try:
            with self._cursor() as cursor:
                cursor.execute(
                    f"""
                    SELECT {_LISTING_COLUMNS}
                    FROM negocios
                    WHERE id = %s
                    LIMIT 1
                    """,
                    (listing_id,),
                )
                row = cursor.fetchone()
        except psycopg2.DataError:
            # A reference that cannot be cast to the id column names no listing.
            return None
        return _row_to_listing(row) if row else None

    def update_visibility(
        self,
        listing_id: str,
        *,
        is_visible: bool,
        subscription_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        rebind: bool = False,
    ) -> Optional[BusinessListing]:
        """Set visibility and optional billing ids in a single guarded statement."""

        with self._cursor() as cursor:
            cursor.execute(
                f"""
                UPDATE negocios
                SET is_visible = %(is_visible)s,
                    stripe_subscription_id = COALESCE(%(subscription_id)s, stripe_subscription_id),
                    stripe_customer_id = COALESCE(%(customer_id)s, stripe_customer_id)
                WHERE id = %(listing_id)s
                  AND COALESCE(grandfathered, FALSE) = FALSE
                  AND (
                      %(rebind)s
                      OR %(subscription_id)s IS NULL
                      OR stripe_subscription_id IS NULL
                      OR stripe_subscription_id = %(subscription_id)s
                  )
                RETURNING {_LISTING_COLUMNS}
                """,
                {
                    "listing_id": listing_id,
                    "is_visible": is_visible,
                    "subscription_id": subscription_id,
                    "customer_id": customer_id,
                    "rebind": rebind,
                },
            )
            row = cursor.fetchone()
        return _row_to_listing(row) if row else None


__all__ = ["PostgresListingRepository", "managed_connection"]
