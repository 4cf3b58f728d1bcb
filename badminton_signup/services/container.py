"""Wires the services once per process."""

from dataclasses import dataclass
from functools import lru_cache

from badminton_signup.core.clock import Clock, utcnow
from badminton_signup.core.config import Settings, get_settings
from badminton_signup.core.security import SessionCookieAuthProvider
from badminton_signup.services.coordinator import RegistrationCoordinator
from badminton_signup.services.ledger import WalletLedger
from badminton_signup.services.lifecycle import SessionLifecycle
from badminton_signup.services.notifications import NotificationGateway, get_notification_gateway
from badminton_signup.services.regulars import RegularRoster
from badminton_signup.services.roster import RosterManager
from badminton_signup.services.users import UserDirectory
from badminton_signup.storage.base import DocumentStore, get_store


@dataclass
class Services:
    store: DocumentStore
    settings: Settings
    notifier: NotificationGateway
    users: UserDirectory
    regulars: RegularRoster
    ledger: WalletLedger
    roster: RosterManager
    lifecycle: SessionLifecycle
    coordinator: RegistrationCoordinator
    auth: SessionCookieAuthProvider


def build_services(
    store: DocumentStore,
    settings: Settings,
    notifier: NotificationGateway | None = None,
    clock: Clock = utcnow,
) -> Services:
    notifier = notifier or get_notification_gateway(settings.notification_backend)
    attempts = settings.cas_max_attempts
    users = UserDirectory(store, cas_max_attempts=attempts)
    regulars = RegularRoster(store, cas_max_attempts=attempts)
    ledger = WalletLedger(store, minimum_balance=settings.minimum_balance, cas_max_attempts=attempts, clock=clock)
    roster = RosterManager(store, cas_max_attempts=attempts, clock=clock)
    lifecycle = SessionLifecycle(
        store,
        ledger,
        roster,
        settings=settings,
        users=users,
        regulars=regulars,
        notifier=notifier,
        clock=clock,
    )
    coordinator = RegistrationCoordinator(
        ledger, roster, lifecycle, users, settings=settings, notifier=notifier, clock=clock
    )
    return Services(
        store=store,
        settings=settings,
        notifier=notifier,
        users=users,
        regulars=regulars,
        ledger=ledger,
        roster=roster,
        lifecycle=lifecycle,
        coordinator=coordinator,
        auth=SessionCookieAuthProvider(users),
    )


@lru_cache
def get_services() -> Services:
    return build_services(get_store(), get_settings())
