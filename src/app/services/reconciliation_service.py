"""
Subscription state transitions driven by PayPal webhooks and manual actions

Keeps ``subscriptions`` rows aligned with PayPal and the ``profiles``
projection aligned with the rows. At most one live (active or
pending_upgrade) row per user and family survives a transition, except for
the resume bundle granted by gold/diamond/megastar.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from core.base_service import BaseService
from core.interfaces import ISubscriptionStore, IUserDirectory
from core.plan_config import (
    FREE_TIER,
    LIVE_STATUSES,
    PaymentStatus,
    PlanIdTable,
    PlanType,
    RESUME_INCLUSIVE_PLANS,
    SubscriptionType,
    expired_tier_for,
    provider_status_to_payment_status,
    tier_priority,
)
from core.responses import (
    PermissionDeniedException,
    StoreError,
    SubscriptionNotActiveError,
    SubscriptionNotFoundError,
)
from schemas import (
    PayPalSubscriptionResource,
    ProfileUpdate,
    SubscriptionRecord,
    WebhookEvent,
    WebhookEventType,
)
from services.paypal_client import PayPalClient, ProviderError
from services.subscription_resolver import (
    parse_correlation_token,
    resolve_end_date,
    resolve_identity,
    resolve_plan_type,
    resolve_subscription_type,
)
from services.transition_saga import TransitionSaga

logger = logging.getLogger(__name__)

PROVIDER_ACTIVE = "ACTIVE"
UPGRADE_CANCEL_REASON = "User changed subscription plan"
USER_CANCEL_REASON = "Canceled by user"
UPGRADE_NOTE_FRAGMENT = "upgraded to a different plan"


@dataclass
class EventContext:
    event_type: WebhookEventType
    resource: PayPalSubscriptionResource
    plan_type: str
    end_date: str

    @property
    def subscription_id(self) -> str:
        return self.resource.id


class SubscriptionReconciler(BaseService):
    """State transition engine for PayPal subscriptions"""

    def __init__(
        self,
        store: ISubscriptionStore,
        directory: Optional[IUserDirectory],
        paypal_client: PayPalClient,
        plan_ids: PlanIdTable,
    ):
        super().__init__(store)
        self.directory = directory
        self.paypal_client = paypal_client
        self.plan_ids = plan_ids
        self._event_handlers = {
            WebhookEventType.ACTIVATED: self._on_activated,
            WebhookEventType.CREATED: self._on_activated,
            WebhookEventType.REACTIVATED: self._on_activated,
            WebhookEventType.CANCELLED: self._on_cancelled,
            WebhookEventType.EXPIRED: self._on_expired,
            WebhookEventType.PAYMENT_FAILED: self._on_payment_failed,
            WebhookEventType.SUSPENDED: self._on_suspended,
        }

    # ------------------------------------------------------------------
    # family helpers
    # ------------------------------------------------------------------

    def _family_of(self, record: SubscriptionRecord) -> SubscriptionType:
        return resolve_subscription_type(record, self.plan_ids)

    def _is_superseded_by(
        self,
        peer: SubscriptionRecord,
        family: SubscriptionType,
        plan_type: str,
    ) -> bool:
        peer_family = self._family_of(peer)
        if peer_family == family:
            return True
        # resume features bundled into gold/diamond/megastar, in both directions
        if family == SubscriptionType.INTERVIEW:
            return peer_family == SubscriptionType.RESUME and plan_type in RESUME_INCLUSIVE_PLANS
        return peer_family == SubscriptionType.INTERVIEW and peer.plan_type in RESUME_INCLUSIVE_PLANS

    async def _has_live_in_family(
        self,
        user_id: str,
        family: SubscriptionType,
        exclude_provider_id: Optional[str] = None,
    ) -> bool:
        rows = await self.store.list_user_subscriptions(
            user_id, LIVE_STATUSES, exclude_provider_id=exclude_provider_id
        )
        return any(self._family_of(row) == family for row in rows)

    def _projection_for(self, live_records: Iterable[SubscriptionRecord]) -> ProfileUpdate:
        """Highest-priority live plan per family; empty families reset to free/expired"""
        live_records = list(live_records)
        update = ProfileUpdate()
        for family in SubscriptionType:
            family_rows = [row for row in live_records if self._family_of(row) == family]
            if family_rows:
                best = max(family_rows, key=lambda row: tier_priority(row.plan_type))
                family_update = ProfileUpdate.for_family(
                    family, tier=best.plan_type, status=PaymentStatus.ACTIVE.value
                )
            else:
                family_update = ProfileUpdate.for_family(
                    family, tier=FREE_TIER, status=PaymentStatus.EXPIRED.value
                )
            update = update.merge(family_update)
        return update

    async def _activate_projection(self, user_id: str, family: SubscriptionType, plan_type: str) -> None:
        await self.store.update_profile(
            user_id,
            ProfileUpdate.for_family(family, tier=plan_type, status=PaymentStatus.ACTIVE.value),
        )

    async def _downgrade_projection(
        self,
        user_id: str,
        family: SubscriptionType,
        update: ProfileUpdate,
        exclude_provider_id: Optional[str] = None,
    ) -> bool:
        """Apply a downgrade only when no other live same-family row remains"""
        if await self._has_live_in_family(user_id, family, exclude_provider_id):
            self.logger.info(
                "User %s still has a live %s subscription, projection kept",
                user_id,
                family.value,
            )
            return False
        await self.store.update_profile(user_id, update)
        return True

    # ------------------------------------------------------------------
    # upgrade protocol
    # ------------------------------------------------------------------

    async def _mark_pending_upgrade(
        self,
        user_id: str,
        family: SubscriptionType,
        new_provider_id: str,
    ) -> List[str]:
        active_rows = await self.store.list_user_subscriptions(
            user_id, [PaymentStatus.ACTIVE], exclude_provider_id=new_provider_id
        )
        marked: List[str] = []
        for row in active_rows:
            if self._family_of(row) != family:
                continue
            await self.store.update_subscription(row.id, payment_status=PaymentStatus.PENDING_UPGRADE)
            marked.append(row.payment_provider_subscription_id)

        if marked:
            self.logger.info("Marked %d subscriptions pending_upgrade for user %s", len(marked), user_id)
        return marked

    async def _restore_pending_upgrades(
        self,
        user_id: str,
        exclude_provider_id: Optional[str] = None,
    ) -> List[str]:
        """Roll pending_upgrade rows back to active and re-project their tiers"""
        pending = await self.store.list_user_subscriptions(
            user_id, [PaymentStatus.PENDING_UPGRADE], exclude_provider_id=exclude_provider_id
        )
        if not pending:
            return []

        for row in pending:
            await self.store.update_subscription(row.id, payment_status=PaymentStatus.ACTIVE)

        restored_by_family: Dict[SubscriptionType, List[SubscriptionRecord]] = {}
        for row in pending:
            restored_by_family.setdefault(self._family_of(row), []).append(row)
        for family, rows in restored_by_family.items():
            best = max(rows, key=lambda row: tier_priority(row.plan_type))
            await self._activate_projection(user_id, family, best.plan_type)

        self.logger.info("Restored %d pending_upgrade subscriptions for user %s", len(pending), user_id)
        return [row.payment_provider_subscription_id for row in pending]

    async def _cancel_superseded(
        self,
        user_id: str,
        new_provider_id: str,
        family: SubscriptionType,
        plan_type: str,
    ) -> List[str]:
        """Cancel every live row the new subscription replaces

        Store failures skip that row; PayPal cancel failures never revert the
        local ``canceled`` marking.
        """
        peers = await self.store.list_user_subscriptions(
            user_id, LIVE_STATUSES, exclude_provider_id=new_provider_id
        )
        superseded = [peer for peer in peers if self._is_superseded_by(peer, family, plan_type)]

        canceled: List[SubscriptionRecord] = []
        for peer in superseded:
            peer_id = peer.payment_provider_subscription_id
            try:
                await self.store.update_subscription(peer.id, payment_status=PaymentStatus.CANCELED)
            except StoreError as e:
                self.logger.error("Could not cancel superseded subscription %s: %s", peer_id, e)
                continue
            canceled.append(peer)
            if peer.payment_status == PaymentStatus.PENDING_UPGRADE:
                self.logger.info("Upgrade completed, replacing %s with %s", peer_id, new_provider_id)
            await self.paypal_client.cancel_subscription(peer_id, UPGRADE_CANCEL_REASON)

        # the new subscription's own family is projected by the caller
        other_families = {self._family_of(peer) for peer in canceled} - {family}
        for other_family in other_families:
            await self._downgrade_projection(
                user_id,
                other_family,
                ProfileUpdate.for_family(other_family, status=PaymentStatus.CANCELED.value),
            )

        return [peer.payment_provider_subscription_id for peer in canceled]

    # ------------------------------------------------------------------
    # manual actions
    # ------------------------------------------------------------------

    async def _ensure_linkable_by(
        self,
        caller_id: str,
        subscription_id: str,
        details: PayPalSubscriptionResource,
    ) -> None:
        existing = await self.store.get_subscription_by_provider_id(subscription_id)
        _, token_user = parse_correlation_token(details.custom_id)
        owners = {owner for owner in (existing.user_id if existing else None, token_user) if owner}
        if not owners and details.subscriber_email and self.directory is not None:
            email_owner = await self.directory.find_user_id_by_email(details.subscriber_email)
            if email_owner:
                owners.add(email_owner)
        if any(owner != caller_id for owner in owners):
            self.logger.warning(
                "User %s tried to link %s owned by %s", caller_id, subscription_id, sorted(owners)
            )
            raise PermissionDeniedException()

    async def force_link(
        self,
        subscription_id: Optional[str],
        user_id: Optional[str] = None,
        *,
        is_upgrade: bool = False,
        is_new_subscription: bool = False,
        caller_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Re-synchronize one subscription after checkout.

        With ``caller_id`` set, the subscription must not already belong to
        another user, whether by its stored row, its ``custom_id`` or its
        subscriber e-mail.
        """
        self.validate_required_fields({"subscription_id": subscription_id}, ["subscription_id"])

        provider_status, details = await self.paypal_client.get_subscription_status(subscription_id)
        if provider_status != PROVIDER_ACTIVE or details is None:
            self.logger.warning("Subscription %s is not active at PayPal: %s", subscription_id, provider_status)
            if is_upgrade:
                rollback_user = user_id
                if not rollback_user and details is not None:
                    _, rollback_user = parse_correlation_token(details.custom_id)
                if rollback_user:
                    await self._restore_pending_upgrades(rollback_user, exclude_provider_id=subscription_id)
            raise SubscriptionNotActiveError(subscription_id, provider_status)

        if caller_id is not None:
            await self._ensure_linkable_by(caller_id, subscription_id, details)

        identity = await resolve_identity(details, self.directory, self.plan_ids, user_id)
        end_date = resolve_end_date(details)
        supersedes_others = is_upgrade or is_new_subscription
        self.logger.info(
            "Linking %s to user %s as %s/%s (upgrade=%s)",
            subscription_id,
            identity.user_id,
            identity.plan_type,
            identity.subscription_type.value,
            is_upgrade,
        )

        async def upsert_active() -> Optional[str]:
            fields = {
                "user_id": identity.user_id,
                "plan_type": identity.plan_type,
                "subscription_type": identity.subscription_type,
                "payment_status": PaymentStatus.ACTIVE,
                "end_date": end_date,
            }
            existing = await self.store.get_subscription_by_provider_id(subscription_id)
            if existing:
                await self.store.update_subscription(existing.id, **fields)
                return existing.id
            record = await self.store.insert_subscription(
                SubscriptionRecord(payment_provider_subscription_id=subscription_id, **fields)
            )
            return record.id

        async def update_projection() -> None:
            if supersedes_others:
                await self._activate_projection(
                    identity.user_id, identity.subscription_type, identity.plan_type
                )
                return
            live = await self.store.list_user_subscriptions(identity.user_id, LIVE_STATUSES)
            family_rows = [row for row in live if self._family_of(row) == identity.subscription_type]
            best = max(family_rows, key=lambda row: tier_priority(row.plan_type), default=None)
            tier = best.plan_type if best else identity.plan_type
            await self._activate_projection(identity.user_id, identity.subscription_type, tier)

        saga = TransitionSaga(f"force_link:{subscription_id}")
        if is_upgrade:
            saga.add(
                "mark_pending_upgrade",
                lambda: self._mark_pending_upgrade(
                    identity.user_id, identity.subscription_type, subscription_id
                ),
            )
        saga.add("upsert_subscription", upsert_active, critical=True)
        if supersedes_others:
            saga.add(
                "cancel_superseded",
                lambda: self._cancel_superseded(
                    identity.user_id, subscription_id, identity.subscription_type, identity.plan_type
                ),
            )
        saga.add("update_projection", update_projection)

        try:
            outcome = await saga.run()
        except Exception:
            if is_upgrade:
                await self._restore_pending_upgrades(identity.user_id, exclude_provider_id=subscription_id)
            raise

        response: Dict[str, Any] = {
            "success": True,
            "subscriptionId": subscription_id,
            "userId": identity.user_id,
            "planType": identity.plan_type,
            "subscriptionType": identity.subscription_type.value,
        }
        if outcome.failed:
            response["warnings"] = sorted(outcome.failed)
        return response

    async def sync_subscriptions(self, user_id: Optional[str]) -> Dict[str, Any]:
        """Pull PayPal truth for every row of a user and rebuild the projection"""
        self.validate_required_fields({"user_id": user_id}, ["user_id"])

        records = await self.store.list_user_subscriptions(user_id)
        reconciled: List[SubscriptionRecord] = []
        updated = 0

        for record in records:
            provider_id = record.payment_provider_subscription_id
            provider_status, details = await self.paypal_client.get_subscription_status(provider_id)
            if details is None:
                # no provider answer, keep the local state
                reconciled.append(record)
                continue

            target = provider_status_to_payment_status(provider_status)
            if target != record.payment_status:
                try:
                    await self.store.update_subscription(record.id, payment_status=target)
                except StoreError as e:
                    self.logger.error("Sync could not update %s: %s", provider_id, e)
                    reconciled.append(record)
                    continue
                self.logger.info(
                    "Sync moved %s from %s to %s",
                    provider_id,
                    record.payment_status.value,
                    target.value,
                )
                record = record.model_copy(update={"payment_status": target})
                updated += 1
            reconciled.append(record)

        live = [record for record in reconciled if record.payment_status in LIVE_STATUSES]
        projection = self._projection_for(live)
        await self.store.update_profile(user_id, projection)

        return {
            "success": True,
            "message": f"Synchronized {len(records)} subscriptions, updated {updated}, found {len(live)} active",
            "activeSubscriptions": len(live),
            "profile": projection.to_columns(),
        }

    async def acknowledge_cancel(self) -> Dict[str, Any]:
        # cancellation itself arrives through the CANCELLED webhook
        return {"success": True, "message": "Cancellation acknowledged"}

    # ------------------------------------------------------------------
    # webhook events
    # ------------------------------------------------------------------

    async def handle_event(self, event: WebhookEvent) -> Dict[str, Any]:
        event_type = WebhookEventType.parse(event.event_type)
        resource = event.resource
        self.logger.info("[PAYPAL] webhook %s received (event_id=%s)", event.event_type, event.id)

        if event.resource_type and event.resource_type.lower() != "subscription":
            self.logger.info("Ignoring %s resource for %s", event.resource_type, event.event_type)
            return {"success": True, "handled": False}
        if resource is None or not resource.id:
            self.logger.warning("Webhook %s carries no subscription id", event.event_type)
            return {"success": True, "handled": False}

        plan_type = resolve_plan_type(resource, self.plan_ids)
        end_date = resolve_end_date(resource)
        if plan_type == PlanType.BRONZE.value and not event_type.is_informational:
            resource, plan_type, end_date = await self._enrich_from_provider(resource, plan_type, end_date)

        context = EventContext(event_type=event_type, resource=resource, plan_type=plan_type, end_date=end_date)
        existing = await self.store.get_subscription_by_provider_id(resource.id)
        if existing is None:
            return await self._on_unknown_subscription(context)

        handler = self._event_handlers.get(event_type, self._on_informational)
        return await handler(context, existing)

    async def _enrich_from_provider(
        self,
        resource: PayPalSubscriptionResource,
        plan_type: str,
        end_date: str,
    ):
        """Webhook resources often omit plan details; refetch when bronze was only a default"""
        try:
            details = await self.paypal_client.get_subscription_details(resource.id)
        except ProviderError as e:
            self.logger.warning("Could not enrich %s from PayPal: %s", resource.id, e)
            return resource, plan_type, end_date

        if not details.custom_id and resource.custom_id:
            details = details.model_copy(update={"custom_id": resource.custom_id})
        if not details.status_change_note and resource.status_change_note:
            details = details.model_copy(update={"status_change_note": resource.status_change_note})
        return details, resolve_plan_type(details, self.plan_ids), resolve_end_date(details)

    def _event_family(self, existing: SubscriptionRecord, resource: PayPalSubscriptionResource) -> SubscriptionType:
        if existing.subscription_type:
            return SubscriptionType(existing.subscription_type)
        return resolve_subscription_type(resource, self.plan_ids)

    @staticmethod
    def _event_result(context: EventContext, action: str, **extra: Any) -> Dict[str, Any]:
        return {
            "success": True,
            "handled": True,
            "eventType": context.event_type.value,
            "subscriptionId": context.subscription_id,
            "action": action,
            **extra,
        }

    async def _on_informational(self, context: EventContext, existing: SubscriptionRecord) -> Dict[str, Any]:
        self.logger.info("No transition for %s on %s", context.event_type.value, context.subscription_id)
        return {"success": True, "handled": False}

    async def _on_activated(self, context: EventContext, existing: SubscriptionRecord) -> Dict[str, Any]:
        subscription_id = context.subscription_id
        provider_status, _ = await self.paypal_client.get_subscription_status(subscription_id)
        if provider_status != PROVIDER_ACTIVE:
            self.logger.warning(
                "Activation of %s not confirmed by PayPal (status=%s)", subscription_id, provider_status
            )
            return self._event_result(context, "ignored", paypalStatus=provider_status)

        family = self._event_family(existing, context.resource)
        user_id = existing.user_id

        saga = TransitionSaga(f"activate:{subscription_id}")
        saga.add(
            "activate_subscription",
            lambda: self.store.update_subscription(
                existing.id,
                payment_status=PaymentStatus.ACTIVE,
                plan_type=context.plan_type,
                end_date=context.end_date,
                subscription_type=family,
            ),
            critical=True,
        )
        if user_id:
            saga.add(
                "cancel_superseded",
                lambda: self._cancel_superseded(user_id, subscription_id, family, context.plan_type),
            )
            saga.add(
                "update_projection",
                lambda: self._activate_projection(user_id, family, context.plan_type),
            )
        else:
            self.logger.warning("Subscription %s has no user, projection not updated", subscription_id)

        outcome = await saga.run()
        return self._event_result(
            context,
            "activated",
            canceled=outcome.results.get("cancel_superseded", []),
            failedSteps=sorted(outcome.failed),
        )

    async def _on_cancelled(self, context: EventContext, existing: SubscriptionRecord) -> Dict[str, Any]:
        subscription_id = context.subscription_id
        note = (context.resource.status_change_note or "").lower()
        if UPGRADE_NOTE_FRAGMENT in note:
            # the activation of the replacement owns the projection write
            await self.store.update_subscription(existing.id, payment_status=PaymentStatus.CANCELED)
            return self._event_result(context, "canceled_for_upgrade")

        family = self._event_family(existing, context.resource)
        saga = TransitionSaga(f"cancel:{subscription_id}")
        saga.add(
            "cancel_subscription",
            lambda: self.store.update_subscription(
                existing.id,
                payment_status=PaymentStatus.CANCELED,
                end_date=context.end_date,
            ),
            critical=True,
        )
        if existing.user_id:
            # tier is left as-is; status alone gates access
            saga.add(
                "update_projection",
                lambda: self._downgrade_projection(
                    existing.user_id,
                    family,
                    ProfileUpdate.for_family(family, status=PaymentStatus.CANCELED.value),
                    exclude_provider_id=subscription_id,
                ),
            )
        outcome = await saga.run()
        return self._event_result(context, "canceled", failedSteps=sorted(outcome.failed))

    async def _on_expired(self, context: EventContext, existing: SubscriptionRecord) -> Dict[str, Any]:
        subscription_id = context.subscription_id
        family = self._event_family(existing, context.resource)
        saga = TransitionSaga(f"expire:{subscription_id}")
        saga.add(
            "expire_subscription",
            lambda: self.store.update_subscription(existing.id, payment_status=PaymentStatus.EXPIRED),
            critical=True,
        )
        if existing.user_id:
            saga.add(
                "update_projection",
                lambda: self._downgrade_projection(
                    existing.user_id,
                    family,
                    ProfileUpdate.for_family(
                        family,
                        tier=expired_tier_for(family),
                        status=PaymentStatus.EXPIRED.value,
                    ),
                    exclude_provider_id=subscription_id,
                ),
            )
        outcome = await saga.run()
        return self._event_result(context, "expired", failedSteps=sorted(outcome.failed))

    async def _on_payment_failed(self, context: EventContext, existing: SubscriptionRecord) -> Dict[str, Any]:
        subscription_id = context.subscription_id
        user_id = existing.user_id
        restored: List[str] = []
        if user_id:
            restored = await self._restore_pending_upgrades(user_id, exclude_provider_id=subscription_id)

        await self.store.update_subscription(existing.id, payment_status=PaymentStatus.PAYMENT_FAILED)
        if restored:
            self.logger.info("Payment failure on %s rolled back an upgrade", subscription_id)
            return self._event_result(context, "upgrade_rolled_back", restored=restored)

        if user_id:
            family = self._event_family(existing, context.resource)
            await self._downgrade_projection(
                user_id,
                family,
                ProfileUpdate.for_family(family, status=PaymentStatus.PAYMENT_FAILED.value),
                exclude_provider_id=subscription_id,
            )
        return self._event_result(context, "payment_failed")

    async def _on_suspended(self, context: EventContext, existing: SubscriptionRecord) -> Dict[str, Any]:
        subscription_id = context.subscription_id
        family = self._event_family(existing, context.resource)
        saga = TransitionSaga(f"suspend:{subscription_id}")
        saga.add(
            "suspend_subscription",
            lambda: self.store.update_subscription(existing.id, payment_status=PaymentStatus.SUSPENDED),
            critical=True,
        )
        if existing.user_id:
            # suspension blocks access even when other rows are live
            saga.add(
                "update_projection",
                lambda: self.store.update_profile(
                    existing.user_id,
                    ProfileUpdate.for_family(family, status=PaymentStatus.SUSPENDED.value),
                ),
            )
        outcome = await saga.run()
        return self._event_result(context, "suspended", failedSteps=sorted(outcome.failed))

    async def _on_unknown_subscription(self, context: EventContext) -> Dict[str, Any]:
        if context.event_type.is_informational:
            self.logger.info("Ignoring %s for unknown subscription %s", context.event_type.value, context.subscription_id)
            return {"success": True, "handled": False}

        subscription_id = context.subscription_id
        identity = await resolve_identity(context.resource, self.directory, self.plan_ids)
        provider_status, _ = await self.paypal_client.get_subscription_status(subscription_id)

        if context.event_type == WebhookEventType.CANCELLED:
            status = PaymentStatus.CANCELED
        elif provider_status == PROVIDER_ACTIVE:
            status = PaymentStatus.ACTIVE
        else:
            status = PaymentStatus.PENDING

        record = SubscriptionRecord(
            user_id=identity.user_id,
            payment_provider_subscription_id=subscription_id,
            plan_type=identity.plan_type,
            subscription_type=identity.subscription_type,
            payment_status=status,
            end_date=context.end_date,
        )
        self.logger.info(
            "Creating %s record for unknown subscription %s (user %s)",
            status.value,
            subscription_id,
            identity.user_id,
        )

        saga = TransitionSaga(f"insert:{subscription_id}")
        saga.add("insert_subscription", lambda: self.store.insert_subscription(record), critical=True)
        if status == PaymentStatus.ACTIVE:
            saga.add(
                "cancel_superseded",
                lambda: self._cancel_superseded(
                    identity.user_id, subscription_id, identity.subscription_type, identity.plan_type
                ),
            )
            saga.add(
                "update_projection",
                lambda: self._activate_projection(
                    identity.user_id, identity.subscription_type, identity.plan_type
                ),
            )
        outcome = await saga.run()
        return self._event_result(
            context,
            "created",
            paymentStatus=status.value,
            userId=identity.user_id,
            planType=identity.plan_type,
            failedSteps=sorted(outcome.failed),
        )

    # ------------------------------------------------------------------
    # user cancellation and expiry sweep
    # ------------------------------------------------------------------

    async def cancel_subscription(
        self, subscription_id: Optional[str], caller_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """User-initiated cancel: PayPal first, then the row, then the projection"""
        self.validate_required_fields({"subscription_id": subscription_id}, ["subscription_id"])

        record = await self.store.get_subscription_by_provider_id(subscription_id)
        if record is None:
            raise SubscriptionNotFoundError(subscription_id)
        if caller_id is not None and record.user_id != caller_id:
            self.logger.warning("User %s tried to cancel %s owned by %s", caller_id, subscription_id, record.user_id)
            raise PermissionDeniedException()
        if record.payment_status in (PaymentStatus.CANCELED, PaymentStatus.EXPIRED):
            return {
                "success": True,
                "message": f"Subscription already {record.payment_status.value}",
                "subscriptionId": subscription_id,
            }

        await self.paypal_client.cancel_subscription_strict(subscription_id, USER_CANCEL_REASON)

        family = self._family_of(record)
        now_iso = datetime.now(timezone.utc).isoformat()
        saga = TransitionSaga(f"user_cancel:{subscription_id}")
        saga.add(
            "cancel_subscription",
            lambda: self.store.update_subscription(
                record.id, payment_status=PaymentStatus.CANCELED, end_date=now_iso
            ),
            critical=True,
        )
        if record.user_id:
            saga.add(
                "update_projection",
                lambda: self._downgrade_projection(
                    record.user_id,
                    family,
                    ProfileUpdate.for_family(
                        family, tier=FREE_TIER, status=PaymentStatus.CANCELED.value
                    ),
                    exclude_provider_id=subscription_id,
                ),
            )
        outcome = await saga.run()

        response: Dict[str, Any] = {
            "success": True,
            "message": "Subscription cancelled successfully",
            "subscriptionId": subscription_id,
        }
        if outcome.failed:
            response["warnings"] = sorted(outcome.failed)
        return response

    async def expire_lapsed_cancellations(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Move canceled rows past their end_date to expired"""
        moment = now or datetime.now(timezone.utc)
        lapsed = await self.store.list_lapsed_cancellations(moment.isoformat())
        self.logger.info("Found %d lapsed cancellations", len(lapsed))

        results: List[Dict[str, Any]] = []
        for record in lapsed:
            provider_id = record.payment_provider_subscription_id
            try:
                await self.store.update_subscription(record.id, payment_status=PaymentStatus.EXPIRED)
                if record.user_id:
                    family = self._family_of(record)
                    await self._downgrade_projection(
                        record.user_id,
                        family,
                        ProfileUpdate.for_family(
                            family,
                            tier=expired_tier_for(family),
                            status=PaymentStatus.EXPIRED.value,
                        ),
                        exclude_provider_id=provider_id,
                    )
            except StoreError as e:
                self.logger.error("Expiring %s failed: %s", provider_id, e)
                results.append({"subscriptionId": provider_id, "success": False, "error": e.message})
                continue
            results.append({"subscriptionId": provider_id, "success": True})

        return {"success": True, "processed": len(lapsed), "results": results}
