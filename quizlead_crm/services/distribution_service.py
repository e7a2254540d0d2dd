from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from quizlead_crm.models import (
    db, User, DistributionCursor, LeadHistory, get_now_br,
    ROLE_USER, WHATSAPP_ONLINE,
    DISTRIBUTION_METHODS, DISTRIBUTION_ROUND_ROBIN, DISTRIBUTION_PRIORITY, DISTRIBUTION_AVAILABILITY,
)
from quizlead_crm.errors import NoEligibleUser, ValidationError
from quizlead_crm.services.settings_service import SettingsService


class DistributionService:
    """
    Picks the salesperson for a new lead.

    Eligibility: role=user, WhatsApp online (when verification is on) and
    under the daily limit (when the limit is respected). The counter is
    claimed with a conditional UPDATE so two concurrent submissions can never
    push a user past the limit; the caller owns the transaction.
    """

    @staticmethod
    def eligible_users(settings, ignore_daily_limit=False):
        query = User.query.filter(User.role == ROLE_USER)
        if settings.verify_whatsapp_active:
            query = query.filter(User.whatsapp_status == WHATSAPP_ONLINE)
        if settings.respect_daily_limit and not ignore_daily_limit:
            query = query.filter(User.leads_received_today < User.daily_lead_limit)
        return query.order_by(User.id).with_for_update().all()

    @staticmethod
    def _cursor(policy):
        cursor = db.session.get(DistributionCursor, policy, with_for_update=True)
        if cursor:
            return cursor
        try:
            with db.session.begin_nested():
                db.session.add(DistributionCursor(key=policy))
        except IntegrityError:
            # A concurrent first submission created it; use theirs
            current_app.logger.info(f"Distribution cursor '{policy}' created concurrently, re-reading")
        return db.session.get(DistributionCursor, policy, with_for_update=True, populate_existing=True)

    @staticmethod
    def _rotate(candidates, last_user_id):
        """Candidates (sorted by id) starting right after the last assigned user."""
        if last_user_id is None:
            return list(candidates)
        after = [u for u in candidates if u.id > last_user_id]
        before = [u for u in candidates if u.id <= last_user_id]
        return after + before

    @staticmethod
    def rank(policy, candidates, last_user_id=None):
        if policy == DISTRIBUTION_ROUND_ROBIN:
            return DistributionService._rotate(candidates, last_user_id)
        if policy == DISTRIBUTION_PRIORITY:
            # Ties: fewest leads today, then lowest id
            return sorted(candidates, key=lambda u: (-u.priority, u.leads_received_today, u.id))
        if policy == DISTRIBUTION_AVAILABILITY:
            # Stable sort keeps the rotation order among equal capacities
            rotated = DistributionService._rotate(candidates, last_user_id)
            return sorted(rotated, key=lambda u: -u.remaining_capacity)
        raise ValidationError('Método de distribuição inválido.', field='distribution_method')

    @staticmethod
    def _claim(ranked, settings, enforce_limit):
        for user in ranked:
            stmt = update(User).where(User.id == user.id)
            if enforce_limit:
                stmt = stmt.where(User.leads_received_today < User.daily_lead_limit)
            if settings.verify_whatsapp_active:
                stmt = stmt.where(User.whatsapp_status == WHATSAPP_ONLINE)
            stmt = stmt.values(leads_received_today=User.leads_received_today + 1)

            result = db.session.execute(stmt.execution_options(synchronize_session=False))
            if result.rowcount == 1:
                db.session.refresh(user)
                return user
            current_app.logger.info(f"Distribution: user {user.id} lost the race for a lead, trying next")
        return None

    @staticmethod
    def assign(lead, settings=None, policy=None):
        """Assigns `lead` and increments the chosen user's counter. Does not commit."""
        settings = settings or SettingsService.get()
        policy = (policy or settings.distribution_method or DISTRIBUTION_ROUND_ROBIN).replace('-', '_')
        if policy not in DISTRIBUTION_METHODS:
            raise ValidationError('Método de distribuição inválido.', field='distribution_method')

        cursor = DistributionService._cursor(policy)
        enforce_limit = settings.respect_daily_limit

        candidates = DistributionService.eligible_users(settings)
        ranked = DistributionService.rank(policy, candidates, cursor.last_user_id)
        user = DistributionService._claim(ranked, settings, enforce_limit)

        used_fallback = False
        if user is None and enforce_limit and settings.auto_fallback:
            candidates = DistributionService.eligible_users(settings, ignore_daily_limit=True)
            ranked = DistributionService.rank(policy, candidates, cursor.last_user_id)
            user = DistributionService._claim(ranked, settings, enforce_limit=False)
            used_fallback = user is not None

        if user is None:
            current_app.logger.warning(f"Distribution: no eligible user for lead {lead.id} (policy={policy})")
            raise NoEligibleUser('Nenhum vendedor disponível para receber o lead.')

        cursor.last_user_id = user.id
        cursor.updated_at = get_now_br()

        lead.assigned_user_id = user.id
        lead.updated_at = get_now_br()
        note = f"Distribuição automática ({policy})"
        if used_fallback:
            note += " - limite diário ignorado (fallback)"
        lead.history.append(LeadHistory(action='assigned', note=note))

        current_app.logger.info(f"Lead {lead.id} assigned to user {user.id} via {policy}{' (fallback)' if used_fallback else ''}")
        return user

    @staticmethod
    def reset_daily_counters():
        count = User.query.filter(User.leads_received_today != 0).update(
            {'leads_received_today': 0}, synchronize_session=False
        )
        db.session.commit()
        current_app.logger.info(f"Daily lead counters reset for {count} users")
        return count
