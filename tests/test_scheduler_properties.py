"""
Property-based tests for the renewal scheduler.

Uses Hypothesis to verify candidate selection, attempt accounting,
retirement of exhausted requests and summary reporting, with a fake
issuance session standing in for the ACME round trip.
"""

import asyncio
import copy
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from hypothesis import given, settings
from hypothesis import strategies as st

from acme_keeper.bindings import SiteRegistry
from acme_keeper.certificate_store import CertificateRequestStore
from acme_keeper.config import BindingConfig, PersistenceConfig, SystemConfig
from acme_keeper.enums import CertificateRequestStatus
from acme_keeper.exceptions import ChallengeTimeoutError, PersistenceError
from acme_keeper.models import CertificateRequest, IssuanceResult, WebSite, WebSiteBinding
from acme_keeper.scheduler import RenewalScheduler


NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeSession:
    """Issuance session double that persists like the real one."""

    def __init__(self, store: CertificateRequestStore) -> None:
        self.store = store
        self.issued: list[str] = []
        self.bound: list[str] = []
        self.failures: dict[str, Exception] = {}
        self.failures_after_issue: dict[str, Exception] = {}
        self.port80_fixes: dict[str, list[str]] = {}

    async def issue(self, request: CertificateRequest) -> IssuanceResult:
        self.issued.append(request.common_name)
        if request.common_name in self.failures:
            raise self.failures[request.common_name]
        issued = copy.deepcopy(request)
        issued.status = CertificateRequestStatus.COMPLETED
        issued.certificate = "-----BEGIN CERTIFICATE-----\nnew\n-----END CERTIFICATE-----\n"
        issued.expiration_date = NOW + timedelta(days=60)
        issued.renewal_attempts = 0
        issued.last_renewal_attempt = None
        issued.last_renewal_error = None
        if request.common_name in self.failures_after_issue:
            issued.status = CertificateRequestStatus.ISSUED
            self.store.update(issued)
            self.store.save()
            raise self.failures_after_issue[request.common_name]
        self.store.update(issued)
        self.store.save()
        return IssuanceResult(request=issued, port80_fixes=self.port80_fixes.get(request.common_name, []))

    async def bind(self, request: CertificateRequest) -> IssuanceResult:
        self.bound.append(request.common_name)
        bound = copy.deepcopy(request)
        bound.status = CertificateRequestStatus.COMPLETED
        self.store.update(bound)
        self.store.save()
        return IssuanceResult(request=bound)


class MockNotifier:
    """Records renewal summaries."""

    def __init__(self) -> None:
        self.summaries: list[dict] = []

    async def notify_binding_auto_created(self, domain: str, site_name: str) -> bool:
        return True

    async def notify_certificate_outcome(self, domain: str, action: str, details: str, is_error: bool) -> bool:
        return True

    async def notify_renewal_summary(self, renewed, renewed_with_fix, failed, duration_seconds, retrying=None) -> bool:
        self.summaries.append({
            "renewed": list(renewed),
            "renewed_with_fix": list(renewed_with_fix),
            "failed": [(f.domain, f.error) for f in failed],
            "retrying": [(r.domain, r.attempts) for r in retrying or []],
        })
        return True


def make_scheduler(tmpdir: str, hosted: list[str], clock=lambda: NOW):
    config = SystemConfig()
    config.persistence = PersistenceConfig(data_dir=Path(tmpdir))
    config.bindings = BindingConfig(sites_file=None)
    site = WebSite(
        id="1",
        name="Default Web Site",
        physical_path=tmpdir,
        bindings=[WebSiteBinding(hostname=domain, port=80) for domain in hosted],
    )
    registry = SiteRegistry(config.bindings, sites=[site])
    store = CertificateRequestStore(config.persistence, clock=clock)
    session = FakeSession(store)
    notifier = MockNotifier()
    scheduler = RenewalScheduler(config, store, session, registry, notifier=notifier, clock=clock)
    return scheduler, store, session, notifier


def make_request(domain: str, **fields) -> CertificateRequest:
    request = CertificateRequest(common_name=domain, subject_alternative_names=[domain], date_created=NOW)
    for name, value in fields.items():
        setattr(request, name, value)
    return request


class TestCandidateSelectionProperty:
    """
    **Feature: acme-keeper, Property 15: Only eligible candidates are issued**
    """

    def test_exhausted_backoff_and_eligible(self) -> None:
        """
        Property 15: Exhausted and backed-off requests are not issued.

        With one exhausted, one inside the backoff window and one eligible
        candidate, exactly one issuance SHALL run and the report SHALL
        contain exactly one entry.

        **Feature: acme-keeper, Property 15: Only eligible candidates are issued**
        """
        with tempfile.TemporaryDirectory() as tmpdir:
            scheduler, store, session, notifier = make_scheduler(tmpdir, ["a.com", "b.com", "c.com"])
            exhausted = make_request(
                "a.com",
                status=CertificateRequestStatus.COMPLETED,
                expiration_date=NOW - timedelta(days=1),
                renewal_attempts=5,
                max_renewal_attempts=5,
                last_renewal_attempt=NOW - timedelta(hours=10),
            )
            backoff = make_request(
                "b.com",
                status=CertificateRequestStatus.COMPLETED,
                expiration_date=NOW - timedelta(days=1),
                renewal_attempts=1,
                last_renewal_attempt=NOW - timedelta(hours=1),
            )
            eligible = make_request(
                "c.com",
                status=CertificateRequestStatus.COMPLETED,
                expiration_date=NOW - timedelta(days=1),
            )
            for request in (exhausted, backoff, eligible):
                store.add(request)

            report = asyncio.run(scheduler.run_pass())

            assert session.issued == ["c.com"]
            assert report.attempted == 1
            assert report.renewed == ["c.com"]
            assert report.failed == []

            retired = store.get_by_id(exhausted.id)
            assert retired.status == CertificateRequestStatus.EXPIRED
            assert retired.last_renewal_error == (
                "Exceeded maximum renewal attempts (5). Last attempt: "
                + (NOW - timedelta(hours=10)).isoformat()
            )

            untouched = store.get_by_id(backoff.id)
            assert untouched.renewal_attempts == 1
            assert untouched.last_renewal_attempt == NOW - timedelta(hours=1)

    @given(days_left=st.integers(min_value=1, max_value=90))
    @settings(max_examples=100)
    def test_active_certificates_are_skipped(self, days_left: int) -> None:
        """
        Property 15b: Certificates that have not lapsed are never re-issued.

        **Feature: acme-keeper, Property 15: Only eligible candidates are issued**
        """
        with tempfile.TemporaryDirectory() as tmpdir:
            scheduler, store, session, notifier = make_scheduler(tmpdir, ["a.com"])
            store.add(make_request(
                "a.com",
                status=CertificateRequestStatus.COMPLETED,
                expiration_date=NOW + timedelta(days=days_left),
            ))

            report = asyncio.run(scheduler.run_pass())

            assert session.issued == []
            assert not report.has_activity
            assert notifier.summaries == []

    def test_new_and_expired_requests_are_candidates(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            scheduler, store, session, notifier = make_scheduler(tmpdir, ["new.com", "old.com"])
            store.add(make_request("new.com"))
            store.add(make_request("old.com", status=CertificateRequestStatus.EXPIRED))

            asyncio.run(scheduler.run_pass())

            assert sorted(session.issued) == ["new.com", "old.com"]

    def test_auto_renew_disabled_is_skipped(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            scheduler, store, session, notifier = make_scheduler(tmpdir, ["a.com"])
            store.add(make_request("a.com", auto_renew=False))

            asyncio.run(scheduler.run_pass())

            assert session.issued == []

    def test_issued_requests_are_rebound(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            scheduler, store, session, notifier = make_scheduler(tmpdir, ["a.com"])
            request = make_request(
                "a.com",
                status=CertificateRequestStatus.ISSUED,
                expiration_date=NOW + timedelta(days=60),
            )
            store.add(request)

            asyncio.run(scheduler.run_pass())

            assert session.bound == ["a.com"]
            assert session.issued == []
            assert store.get_by_id(request.id).status == CertificateRequestStatus.COMPLETED


class TestAttemptAccountingProperty:
    """
    **Feature: acme-keeper, Property 16: Failed attempts are counted until retirement**
    """

    @given(
        prior_attempts=st.integers(min_value=0, max_value=9),
        max_attempts=st.integers(min_value=1, max_value=10),
    )
    @settings(max_examples=100)
    def test_failure_counts_attempt(self, prior_attempts: int, max_attempts: int) -> None:
        """
        Property 16: A failed attempt increments the counter and records the error.

        *For any* request below its attempt budget, a failed issuance SHALL
        leave the counter one higher, and the request SHALL be Expired
        exactly when the budget is now spent.

        **Feature: acme-keeper, Property 16: Failed attempts are counted until retirement**
        """
        if prior_attempts >= max_attempts:
            prior_attempts = max_attempts - 1

        with tempfile.TemporaryDirectory() as tmpdir:
            scheduler, store, session, notifier = make_scheduler(tmpdir, ["a.com"])
            request = make_request(
                "a.com",
                status=CertificateRequestStatus.COMPLETED,
                expiration_date=NOW - timedelta(days=1),
                renewal_attempts=prior_attempts,
                max_renewal_attempts=max_attempts,
                last_renewal_attempt=NOW - timedelta(hours=7) if prior_attempts else None,
            )
            store.add(request)
            session.failures["a.com"] = ChallengeTimeoutError(code="challenge_timeout", message="Timed out")

            report = asyncio.run(scheduler.run_pass())

            stored = store.get_by_id(request.id)
            assert stored.renewal_attempts == prior_attempts + 1
            assert stored.last_renewal_attempt == NOW
            assert len(report.failed) == 1

            if prior_attempts + 1 >= max_attempts:
                assert stored.status == CertificateRequestStatus.EXPIRED
                assert stored.last_renewal_error == f"Failed after {prior_attempts + 1} attempts: Timed out"
                assert report.retrying == []
            else:
                assert stored.status == CertificateRequestStatus.COMPLETED
                assert stored.last_renewal_error == "Timed out"
                assert [(r.domain, r.attempts) for r in report.retrying] == [("a.com", prior_attempts + 1)]

    def test_success_resets_counters(self) -> None:
        """
        Property 16b: A successful renewal clears the attempt history.

        **Feature: acme-keeper, Property 16: Failed attempts are counted until retirement**
        """
        with tempfile.TemporaryDirectory() as tmpdir:
            scheduler, store, session, notifier = make_scheduler(tmpdir, ["a.com"])
            request = make_request(
                "a.com",
                status=CertificateRequestStatus.COMPLETED,
                expiration_date=NOW - timedelta(days=1),
                renewal_attempts=2,
                last_renewal_attempt=NOW - timedelta(hours=7),
                last_renewal_error="Timed out",
            )
            store.add(request)

            asyncio.run(scheduler.run_pass())

            stored = store.get_by_id(request.id)
            assert stored.renewal_attempts == 0
            assert stored.last_renewal_attempt is None
            assert stored.last_renewal_error is None
            assert stored.expiration_date == NOW + timedelta(days=60)

    def test_missing_site_is_a_failed_attempt(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            scheduler, store, session, notifier = make_scheduler(tmpdir, [])
            request = make_request("gone.com", expiration_date=NOW - timedelta(days=1))
            store.add(request)

            report = asyncio.run(scheduler.run_pass())

            assert session.issued == []
            assert [(f.domain, f.error) for f in report.failed] == [
                ("gone.com", "Could not find a site for gone.com"),
            ]
            assert store.get_by_id(request.id).renewal_attempts == 1

    def test_retired_request_is_not_retired_again(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            scheduler, store, session, notifier = make_scheduler(tmpdir, ["a.com"])
            request = make_request(
                "a.com",
                status=CertificateRequestStatus.EXPIRED,
                renewal_attempts=5,
                last_renewal_error="Failed after 5 attempts: Timed out",
            )
            store.add(request)

            report = asyncio.run(scheduler.run_pass())

            assert session.issued == []
            assert not report.has_activity
            assert store.get_by_id(request.id).last_renewal_error == "Failed after 5 attempts: Timed out"


class TestLateFailureProperty:
    """
    **Feature: acme-keeper, Property 34: A certificate persisted before a failure is kept**
    """

    @given(
        error=st.sampled_from([
            RuntimeError("smtp down"),
            PersistenceError(code="save_failed", message="Disk full"),
        ]),
        prior_attempts=st.integers(min_value=0, max_value=4),
    )
    @settings(max_examples=20)
    def test_failure_after_issue_keeps_new_certificate(self, error: Exception, prior_attempts: int) -> None:
        """
        Property 34: An error raised after issuance was persisted does not roll it back.

        *For any* lapsed request whose session stores a new certificate and
        then raises, the pass SHALL report the failure while the store keeps
        the new certificate and expiration.

        **Feature: acme-keeper, Property 34: A certificate persisted before a failure is kept**
        """
        with tempfile.TemporaryDirectory() as tmpdir:
            scheduler, store, session, notifier = make_scheduler(tmpdir, ["a.com"])
            request = make_request(
                "a.com",
                status=CertificateRequestStatus.COMPLETED,
                certificate="-----BEGIN CERTIFICATE-----\nold\n-----END CERTIFICATE-----\n",
                expiration_date=NOW - timedelta(days=1),
                renewal_attempts=prior_attempts,
                max_renewal_attempts=5,
            )
            store.add(request)
            session.failures_after_issue["a.com"] = error

            report = asyncio.run(scheduler.run_pass())

            stored = store.get_by_id(request.id)
            assert stored.status == CertificateRequestStatus.ISSUED
            assert "new" in stored.certificate
            assert stored.expiration_date == NOW + timedelta(days=60)
            assert stored.last_renewal_error is None
            assert [f.domain for f in report.failed] == ["a.com"]
            assert report.retrying == []

            reloaded = CertificateRequestStore(scheduler._config.persistence, clock=lambda: NOW)
            reloaded.load()
            assert reloaded.get_by_id(request.id).expiration_date == NOW + timedelta(days=60)

    def test_failure_before_issue_still_counts(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            scheduler, store, session, notifier = make_scheduler(tmpdir, ["a.com"])
            request = make_request(
                "a.com",
                status=CertificateRequestStatus.COMPLETED,
                expiration_date=NOW - timedelta(days=1),
            )
            store.add(request)
            session.failures["a.com"] = RuntimeError("smtp down")

            asyncio.run(scheduler.run_pass())

            stored = store.get_by_id(request.id)
            assert stored.expiration_date == NOW - timedelta(days=1)
            assert stored.last_renewal_error == "smtp down"
            assert stored.renewal_attempts == 1


class TestSummaryReportingProperty:
    """
    **Feature: acme-keeper, Property 17: Summaries are sent only for passes with activity**
    """

    def test_summary_lists_outcomes(self) -> None:
        """
        Property 17: The summary separates clean renewals, port 80 fixes and failures.

        **Feature: acme-keeper, Property 17: Summaries are sent only for passes with activity**
        """
        with tempfile.TemporaryDirectory() as tmpdir:
            scheduler, store, session, notifier = make_scheduler(tmpdir, ["a.com", "b.com", "c.com"])
            for domain in ("a.com", "b.com", "c.com"):
                store.add(make_request(domain, expiration_date=NOW - timedelta(days=1)))
            session.port80_fixes["b.com"] = ["b.com"]
            session.failures["c.com"] = RuntimeError("boom")

            asyncio.run(scheduler.run_pass())

            assert notifier.summaries == [{
                "renewed": ["a.com"],
                "renewed_with_fix": ["b.com"],
                "failed": [("c.com", "boom")],
                "retrying": [("c.com", 1)],
            }]

    def test_empty_pass_sends_nothing(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            scheduler, store, session, notifier = make_scheduler(tmpdir, [])

            report = asyncio.run(scheduler.run_pass())

            assert report.attempted == 0
            assert report.finished_at == NOW
            assert notifier.summaries == []


class TestSchedulerLoop:
    """Start/stop behavior of the background loop."""

    def test_first_pass_then_next_run_from_pass_start(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            scheduler, store, session, notifier = make_scheduler(tmpdir, ["a.com"])
            scheduler._config.renewal.initial_delay_seconds = 0
            store.add(make_request("a.com"))

            async def scenario() -> Optional[datetime]:
                scheduler.start()
                expected = NOW + timedelta(hours=scheduler._config.renewal.interval_hours)
                for _ in range(100):
                    await asyncio.sleep(0)
                    if scheduler.next_run == expected:
                        break
                scheduler.stop()
                await scheduler.wait_stopped()
                return scheduler.next_run

            next_run = asyncio.run(scenario())

            assert session.issued == ["a.com"]
            assert next_run == NOW + timedelta(hours=24)
            assert not scheduler.is_running()

    def test_stop_before_first_pass(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            scheduler, store, session, notifier = make_scheduler(tmpdir, ["a.com"])
            scheduler._config.renewal.initial_delay_seconds = 3600
            store.add(make_request("a.com"))

            async def scenario() -> None:
                scheduler.start()
                await asyncio.sleep(0)
                assert scheduler.is_running()
                scheduler.stop()
                await scheduler.wait_stopped()

            asyncio.run(scenario())

            assert session.issued == []
            assert scheduler.next_run == NOW + timedelta(seconds=3600)

    def test_double_start_is_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            scheduler, store, session, notifier = make_scheduler(tmpdir, [])
            scheduler._config.renewal.initial_delay_seconds = 3600

            async def scenario() -> None:
                scheduler.start()
                try:
                    scheduler.start()
                    assert False, "Expected RuntimeError"
                except RuntimeError:
                    pass
                finally:
                    scheduler.stop()
                    await scheduler.wait_stopped()

            asyncio.run(scenario())

    def test_wait_before_start_is_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            scheduler, store, session, notifier = make_scheduler(tmpdir, [])

            try:
                asyncio.run(scheduler._wait_until(NOW))
                assert False, "Expected RuntimeError"
            except RuntimeError as e:
                assert str(e) == "Scheduler is not started"
