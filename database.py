import json
import logging
import time

from models import Trade, TradeStatus, Venue, VenueStatus
from services.errors import ConcurrencyConflict, NotFoundError

logger = logging.getLogger("Database")

TRADE_COLUMNS = "trade_id, venue_id, status, version, data"
VENUE_COLUMNS = "venue_id, title, status, assigned_trade_id, assigned_at, completed_at, invite_code, contracts, version"


def create_trade_id(length: int = 12, prefix: str = "TR"):
    import string
    import secrets
    charset = string.ascii_uppercase + string.digits
    trade_id = ''.join(secrets.choice(charset) for _ in range(length))
    return f"{prefix}{trade_id}" if prefix else trade_id


def _status_values(statuses):
    return [TradeStatus(s).value for s in statuses]


def _row_to_trade(row):
    """Convert DB row to Trade"""
    # Row: (trade_id, venue_id, status, version, data)
    if not row:
        return None
    data = row[4]
    if isinstance(data, str):
        data = json.loads(data)
    data.update({
        "trade_id": row[0],
        "venue_id": row[1],
        "status": row[2],
        "version": row[3],
    })
    return Trade.from_dict(data)


def _row_to_venue(row):
    if not row:
        return None
    contracts = row[7] or {}
    if isinstance(contracts, str):
        contracts = json.loads(contracts) if contracts else {}
    return Venue(
        venue_id=row[0],
        title=row[1],
        status=VenueStatus(row[2]),
        assigned_trade_id=row[3],
        assigned_at=row[4],
        completed_at=row[5],
        invite_code=row[6],
        contracts=contracts,
        version=row[8],
    )


class TradeStore:
    """Authoritative store for trades.

    Every write is conditional on the version read just before it (and, when
    given, on the expected prior status), so a handler racing another one sees
    its write rejected instead of silently overwriting.
    """

    def __init__(self, db):
        self.db = db

    def insert(self, trade: Trade):
        p = self.db.p
        now = time.time()
        trade.created_at = trade.created_at or now
        trade.updated_at = now
        with self.db.cursor() as cursor:
            cursor.execute(f"""
                INSERT INTO trades (trade_id, venue_id, status, version, creator_id, buyer_id, seller_id, created_at, updated_at, data)
                VALUES ({p}, {p}, {p}, {p}, {p}, {p}, {p}, {p}, {p}, {p})
            """, (
                trade.trade_id, trade.venue_id, trade.status.value, trade.version,
                _str_or_none(trade.creator_id), _str_or_none(trade.buyer_id), _str_or_none(trade.seller_id),
                trade.created_at, trade.updated_at, json.dumps(trade.to_dict()),
            ))
        return trade

    def get(self, trade_id):
        with self.db.cursor() as cursor:
            cursor.execute(f"SELECT {TRADE_COLUMNS} FROM trades WHERE trade_id = {self.db.p}", (trade_id,))
            return _row_to_trade(cursor.fetchone())

    def require(self, trade_id):
        trade = self.get(trade_id)
        if not trade:
            raise NotFoundError(f"Trade {trade_id} not found.")
        return trade

    def find_by_venue(self, venue_id, statuses=None):
        """Most recent trade bound to a venue, optionally restricted to statuses."""
        p = self.db.p
        query = f"SELECT {TRADE_COLUMNS} FROM trades WHERE venue_id = {p}"
        params = [str(venue_id)]
        if statuses:
            values = _status_values(statuses)
            query += f" AND status IN ({', '.join([p] * len(values))})"
            params.extend(values)
        query += " ORDER BY created_at DESC"
        with self.db.cursor() as cursor:
            cursor.execute(query, tuple(params))
            return _row_to_trade(cursor.fetchone())

    def list_by_status(self, statuses):
        values = _status_values(statuses)
        p = self.db.p
        with self.db.cursor() as cursor:
            cursor.execute(
                f"SELECT {TRADE_COLUMNS} FROM trades WHERE status IN ({', '.join([p] * len(values))}) ORDER BY created_at",
                tuple(values),
            )
            return [_row_to_trade(row) for row in cursor.fetchall()]

    def write(self, trade: Trade, expected_statuses=None):
        """Conditional write. Returns False if the stored record moved on."""
        p = self.db.p
        trade.updated_at = time.time()
        query = f"""
            UPDATE trades SET venue_id = {p}, status = {p}, version = version + 1,
                buyer_id = {p}, seller_id = {p}, updated_at = {p}, data = {p}
            WHERE trade_id = {p} AND version = {p}
        """
        params = [
            trade.venue_id, trade.status.value,
            _str_or_none(trade.buyer_id), _str_or_none(trade.seller_id),
            trade.updated_at, None,
            trade.trade_id, trade.version,
        ]
        if expected_statuses:
            values = _status_values(expected_statuses)
            query += f" AND status IN ({', '.join([p] * len(values))})"
            params.extend(values)

        stored = trade.to_dict()
        stored["version"] = trade.version + 1
        params[5] = json.dumps(stored)

        with self.db.cursor() as cursor:
            cursor.execute(query, tuple(params))
            written = cursor.rowcount == 1
        if written:
            trade.version += 1
        return written

    def update(self, trade_id, mutate, expected_statuses=None, retries=1):
        """Re-read, mutate, conditionally write; retry on a lost race.

        `mutate(trade)` edits the trade in place. It may raise to abort, or
        return False to signal there is nothing to write. Returns the trade as
        stored after the call.
        """
        attempts = retries + 1
        for attempt in range(attempts):
            trade = self.require(trade_id)
            if expected_statuses and trade.status not in expected_statuses:
                raise ConcurrencyConflict(
                    f"Trade {trade_id} is {trade.status.value}, expected one of "
                    f"{', '.join(sorted(_status_values(expected_statuses)))}."
                )
            if mutate(trade) is False:
                return trade
            if self.write(trade, expected_statuses):
                return trade
            logger.warning(f"[STORE] Write conflict on {trade_id} (attempt {attempt + 1}/{attempts})")
        raise ConcurrencyConflict(f"Trade {trade_id} was modified concurrently. Please try again.")

    def add_to_set(self, trade_id, field_name, value, expected_statuses=None):
        def _add(trade):
            current = getattr(trade, field_name)
            if value in current:
                return False
            current.append(value)

        return self.update(trade_id, _add, expected_statuses)

    def delete(self, trade_id, expected_statuses=None):
        p = self.db.p
        query = f"DELETE FROM trades WHERE trade_id = {p}"
        params = [trade_id]
        if expected_statuses:
            values = _status_values(expected_statuses)
            query += f" AND status IN ({', '.join([p] * len(values))})"
            params.extend(values)
        with self.db.cursor() as cursor:
            cursor.execute(query, tuple(params))
            deleted = cursor.rowcount == 1
            if deleted:
                cursor.execute(f"DELETE FROM trade_ui_refs WHERE trade_id = {p}", (trade_id,))
        return deleted

    # --- UI bookkeeping side channel ---
    def set_ui_ref(self, trade_id, key, value):
        p = self.db.p
        with self.db.cursor() as cursor:
            cursor.execute(f"""
                INSERT INTO trade_ui_refs (trade_id, ref_key, ref_value) VALUES ({p}, {p}, {p})
                ON CONFLICT (trade_id, ref_key) DO UPDATE SET ref_value = EXCLUDED.ref_value
            """, (trade_id, key, None if value is None else str(value)))

    def get_ui_ref(self, trade_id, key):
        p = self.db.p
        with self.db.cursor() as cursor:
            cursor.execute(f"SELECT ref_value FROM trade_ui_refs WHERE trade_id = {p} AND ref_key = {p}", (trade_id, key))
            row = cursor.fetchone()
        return row[0] if row else None


class VenueStore:
    def __init__(self, db):
        self.db = db

    def add(self, venue: Venue):
        """Idempotent: an existing venue is returned untouched."""
        existing = self.get(venue.venue_id)
        if existing:
            return existing
        p = self.db.p
        with self.db.cursor() as cursor:
            cursor.execute(f"""
                INSERT INTO venues ({VENUE_COLUMNS})
                VALUES ({p}, {p}, {p}, {p}, {p}, {p}, {p}, {p}, {p})
                ON CONFLICT (venue_id) DO NOTHING
            """, (
                venue.venue_id, venue.title, venue.status.value, venue.assigned_trade_id,
                venue.assigned_at, venue.completed_at, venue.invite_code,
                json.dumps(venue.contracts or {}), venue.version,
            ))
        return self.get(venue.venue_id)

    def get(self, venue_id):
        with self.db.cursor() as cursor:
            cursor.execute(f"SELECT {VENUE_COLUMNS} FROM venues WHERE venue_id = {self.db.p}", (str(venue_id),))
            return _row_to_venue(cursor.fetchone())

    def find_by_trade(self, trade_id):
        """Venue currently bound to a trade, if any."""
        with self.db.cursor() as cursor:
            cursor.execute(
                f"SELECT {VENUE_COLUMNS} FROM venues WHERE assigned_trade_id = {self.db.p} ORDER BY assigned_at DESC",
                (trade_id,),
            )
            return _row_to_venue(cursor.fetchone())

    def list_by_status(self, status):
        with self.db.cursor() as cursor:
            cursor.execute(
                f"SELECT {VENUE_COLUMNS} FROM venues WHERE status = {self.db.p} ORDER BY venue_id",
                (VenueStatus(status).value,),
            )
            return [_row_to_venue(row) for row in cursor.fetchall()]

    def claim_available(self, trade_id):
        """Atomically bind the first available venue to a trade."""
        p = self.db.p
        for venue in self.list_by_status(VenueStatus.AVAILABLE):
            now = time.time()
            with self.db.cursor() as cursor:
                cursor.execute(f"""
                    UPDATE venues SET status = {p}, assigned_trade_id = {p}, assigned_at = {p},
                        completed_at = NULL, version = version + 1
                    WHERE venue_id = {p} AND status = {p}
                """, (VenueStatus.ASSIGNED.value, trade_id, now, venue.venue_id, VenueStatus.AVAILABLE.value))
                claimed = cursor.rowcount == 1
            if claimed:
                return self.get(venue.venue_id)
            logger.info(f"[POOL] Venue {venue.venue_id} taken concurrently, trying next")
        return None

    def transition(self, venue_id, to_status, expected_statuses, **changes):
        """Conditional status change. Returns False if the venue was not in an expected status."""
        p = self.db.p
        assignments = [f"status = {p}", "version = version + 1"]
        params = [VenueStatus(to_status).value]
        for column, value in changes.items():
            assignments.append(f"{column} = {p}")
            params.append(value)
        values = [VenueStatus(s).value for s in expected_statuses]
        params.append(str(venue_id))
        params.extend(values)
        with self.db.cursor() as cursor:
            cursor.execute(f"""
                UPDATE venues SET {', '.join(assignments)}
                WHERE venue_id = {p} AND status IN ({', '.join([p] * len(values))})
            """, tuple(params))
            return cursor.rowcount == 1

    def set_invite(self, venue_id, invite_code):
        p = self.db.p
        with self.db.cursor() as cursor:
            cursor.execute(
                f"UPDATE venues SET invite_code = {p}, version = version + 1 WHERE venue_id = {p}",
                (invite_code, str(venue_id)),
            )

    def set_contracts(self, venue_id, contracts):
        p = self.db.p
        with self.db.cursor() as cursor:
            cursor.execute(
                f"UPDATE venues SET contracts = {p}, version = version + 1 WHERE venue_id = {p}",
                (json.dumps(contracts or {}), str(venue_id)),
            )

    def stats(self):
        result = {"total": 0}
        for status in VenueStatus:
            result[status.value] = 0
        with self.db.cursor() as cursor:
            cursor.execute("SELECT status, COUNT(*) FROM venues GROUP BY status")
            for status, count in cursor.fetchall():
                result[status] = count
                result["total"] += count
        return result


def _str_or_none(value):
    return None if value is None else str(value)
