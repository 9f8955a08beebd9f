import asyncio
import logging
import time

from models import ACTIVE_STATUSES, Venue, VenueStatus
from services.errors import NotFoundError, ValidationError, VenueUnavailable

logger = logging.getLogger("VenuePool")


class VenuePool:
    """Binds each trade to one venue and reclaims venues only after a clean eviction.

    A venue whose participants could not all be removed is marked terminal and
    never handed to another trade.
    """

    def __init__(self, venues, trades, messenger, audit=None):
        self.venues = venues
        self.trades = trades
        self.messenger = messenger
        self.audit = audit
        self._locks = {}

    def _get_lock(self, venue_id):
        if venue_id not in self._locks:
            self._locks[venue_id] = asyncio.Lock()
        return self._locks[venue_id]

    def assign(self, trade_id):
        venue = self.venues.claim_available(trade_id)
        if venue is None:
            raise VenueUnavailable("No trade rooms are free right now. Please try again in a few minutes.")
        logger.info(f"[POOL] Venue {venue.venue_id} assigned to {trade_id}")
        return venue

    async def evict_participants(self, trade, venue_id):
        """Remove every known participant. True only if all removals succeeded."""
        ok = True
        for user_id in sorted(trade.participant_ids()):
            try:
                removed = await self.messenger.remove_member(venue_id, user_id)
            except Exception as e:
                logger.error(f"[RECYCLE] Removing {user_id} from {venue_id} failed: {e}")
                removed = False
            if not removed:
                ok = False
        return ok

    async def refresh_invite(self, venue_id):
        try:
            invite = await self.messenger.rotate_invite(venue_id)
        except Exception as e:
            logger.error(f"[POOL] Invite rotation failed for {venue_id}: {e}")
            return None
        self.venues.set_invite(venue_id, invite)
        return invite

    def release(self, venue_id):
        released = self.venues.transition(
            venue_id, VenueStatus.AVAILABLE, [VenueStatus.ASSIGNED],
            assigned_trade_id=None, assigned_at=None, completed_at=time.time(),
        )
        if released:
            logger.info(f"[POOL] Venue {venue_id} available again")
        return released

    def mark_terminal(self, venue_id):
        marked = self.venues.transition(
            venue_id, VenueStatus.TERMINAL, [VenueStatus.ASSIGNED], completed_at=time.time(),
        )
        if marked:
            logger.warning(f"[POOL] Venue {venue_id} retired (eviction incomplete)")
        return marked

    async def recycle(self, trade, venue_id=None):
        """Evict, rotate the invite and return the venue to the pool, or retire it.

        No-op if the venue is no longer bound to this trade. Returns the venue's
        resulting status.
        """
        venue_id = venue_id or trade.venue_id
        if not venue_id:
            bound = self.venues.find_by_trade(trade.trade_id)
            if bound is None:
                return None
            venue_id = bound.venue_id
        async with self._get_lock(venue_id):
            venue = self.venues.get(venue_id)
            if venue is None:
                raise NotFoundError(f"Venue {venue_id} not found.")
            if venue.status != VenueStatus.ASSIGNED or venue.assigned_trade_id != trade.trade_id:
                logger.info(f"[RECYCLE] Venue {venue_id} not bound to {trade.trade_id}; skipping")
                return venue.status

            evicted = await self.evict_participants(trade, venue_id)
            if evicted:
                await self.refresh_invite(venue_id)
                self.release(venue_id)
                status = VenueStatus.AVAILABLE
            else:
                self.mark_terminal(venue_id)
                status = VenueStatus.TERMINAL

        if self.audit:
            self.audit.log_action("venue_recycled", "system", trade.trade_id, f"venue={venue_id} status={status.value}")
        return status

    # --- administration ---
    def add_venue(self, venue_id, title=None, contracts=None):
        venue = self.venues.add(Venue(venue_id=str(venue_id), title=title, contracts=contracts or {}))
        if contracts and venue.contracts != contracts:
            self.venues.set_contracts(venue_id, contracts)
            venue = self.venues.get(venue_id)
        return venue

    def pool_stats(self):
        return self.venues.stats()

    def archive_venue(self, venue_id):
        if not self.venues.transition(venue_id, VenueStatus.ARCHIVED, [VenueStatus.AVAILABLE, VenueStatus.TERMINAL]):
            raise ValidationError(f"Venue {venue_id} is in use or does not exist.")
        self._locks.pop(str(venue_id), None)
        logger.info(f"[POOL] Venue {venue_id} archived")

    def reset_terminal_venues(self):
        """Return retired venues to the pool when no active trade still points at them."""
        reset = []
        for venue in self.venues.list_by_status(VenueStatus.TERMINAL):
            if self.trades.find_by_venue(venue.venue_id, ACTIVE_STATUSES):
                continue
            if self.venues.transition(
                venue.venue_id, VenueStatus.AVAILABLE, [VenueStatus.TERMINAL],
                assigned_trade_id=None, assigned_at=None,
            ):
                reset.append(venue.venue_id)
        if reset:
            logger.info(f"[POOL] Reset {len(reset)} terminal venue(s): {', '.join(reset)}")
        return reset
