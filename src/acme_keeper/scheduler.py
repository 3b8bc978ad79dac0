"""
Renewal scheduler for the certificate lifecycle engine.

A single background task runs renewal passes: the first shortly after
startup, each following one at "previous pass start + interval". The next
pass is only armed after the current one finished, so passes never overlap.
Stopping the scheduler prevents a new pass from being armed; a pass already
in progress runs to completion.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional

from .audit_logger import AuditLogger
from .bindings import BindingProvider
from .certificate_store import CertificateRequestStore
from .config import SystemConfig
from .enums import CertificateAuthorityProvider, CertificateRequestStatus, LogLevel
from .issuance import IssuanceSession
from .models import CertificateRequest, RenewalFailure, RenewalReport, RetryingCertificate, WebSite, utc_now
from .notifications import Notifier


CANDIDATE_STATUSES = (
    CertificateRequestStatus.COMPLETED,
    CertificateRequestStatus.EXPIRED,
    CertificateRequestStatus.NEW,
)


class RenewalScheduler:
    """
    Self-rescheduling renewal loop.

    Per candidate the pass applies, in order: skip while the certificate is
    still valid, retire once the attempt budget is spent, skip inside the
    backoff window, then count the attempt and persist it before issuing.
    """

    COMPONENT = "RenewalScheduler"

    def __init__(
        self,
        config: SystemConfig,
        store: CertificateRequestStore,
        session: IssuanceSession,
        bindings: BindingProvider,
        notifier: Optional[Notifier] = None,
        logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config
        self._store = store
        self._session = session
        self._bindings = bindings
        self._notifier = notifier
        self._logger = logger
        self._clock = clock
        self._provider = CertificateAuthorityProvider(config.renewal.provider)
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._pass_lock = asyncio.Lock()
        self._next_run: Optional[datetime] = None

    @property
    def next_run(self) -> Optional[datetime]:
        return self._next_run

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Start the background loop on the running event loop."""
        if self.is_running():
            raise RuntimeError("Scheduler is already running")
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name="acme-keeper-renewal")
        return self._task

    def stop(self) -> None:
        """Signal the loop to stop arming passes."""
        if self._stop_event is not None:
            self._stop_event.set()

    async def wait_stopped(self) -> None:
        """Wait for the loop to exit, including any pass in progress."""
        if self._task is not None:
            await self._task

    async def _run_loop(self) -> None:
        renewal = self._config.renewal
        self._next_run = self._clock() + timedelta(seconds=renewal.initial_delay_seconds)
        self._log(LogLevel.INFO, "Renewal scheduler started", {"first_run": self._next_run.isoformat()})

        while not await self._wait_until(self._next_run):
            started = self._clock()
            try:
                await self.run_pass()
            except Exception as e:
                if self._logger:
                    self._logger.log_error(self.COMPONENT, "Renewal pass failed", e)

            self._next_run = started + timedelta(hours=renewal.interval_hours)
            self._log(LogLevel.INFO, "Next renewal pass scheduled", {"next_run": self._next_run.isoformat()})

        self._log(LogLevel.INFO, "Renewal scheduler stopped", {})

    async def _wait_until(self, due: datetime) -> bool:
        """Sleep until ``due``; returns True when stopped instead."""
        if self._stop_event is None:
            raise RuntimeError("Scheduler is not started")
        delay = max(0.0, (due - self._clock()).total_seconds())
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        return self._stop_event.is_set()

    async def run_pass(self) -> RenewalReport:
        """
        Run one renewal pass and report it.

        Failures are isolated per candidate; the summary is sent only when
        something was renewed or failed.
        """
        async with self._pass_lock:
            report = RenewalReport(started_at=self._clock())
            self._log(LogLevel.INFO, "Starting renewal pass", {})

            await self._reconcile_bindings()

            for candidate in self._candidates():
                try:
                    await self._process(candidate, report)
                except Exception as e:
                    if self._logger:
                        self._logger.log_error(self.COMPONENT, f"Renewal of {candidate.common_name} failed", e, {
                            "request_id": candidate.id,
                        })
                    report.failed.append(RenewalFailure(domain=candidate.common_name, error=str(e)))

            report.retrying = self._retrying()
            report.finished_at = self._clock()
            self._log(LogLevel.INFO, "Renewal pass finished", {
                "attempted": report.attempted,
                "renewed": len(report.renewed),
                "renewed_with_fix": len(report.renewed_with_fix),
                "failed": len(report.failed),
                "duration_seconds": report.duration_seconds,
            })

            if report.has_activity and self._notifier is not None:
                await self._notifier.notify_renewal_summary(
                    report.renewed,
                    report.renewed_with_fix,
                    report.failed,
                    report.duration_seconds,
                    report.retrying,
                )
            return report

    def _candidates(self) -> list[CertificateRequest]:
        candidates: list[CertificateRequest] = []
        for status in CANDIDATE_STATUSES:
            candidates.extend(self._store.get_by_status(self._provider, status))
        return [c for c in candidates if c.auto_renew]

    async def _reconcile_bindings(self) -> None:
        for request in self._store.get_by_status(self._provider, CertificateRequestStatus.ISSUED):
            try:
                result = await self._session.bind(request)
            except Exception as e:
                if self._logger:
                    self._logger.log_error(self.COMPONENT, f"Could not rebind {request.common_name}", e, {
                        "request_id": request.id,
                    })
                continue
            if result.fully_bound:
                self._log(LogLevel.INFO, f"Bound previously issued certificate for {request.common_name}", {
                    "request_id": request.id,
                })

    async def _process(self, request: CertificateRequest, report: RenewalReport) -> None:
        now = self._clock()
        domain = request.common_name

        if request.is_active(now):
            return

        if request.renewal_exhausted:
            if request.status != CertificateRequestStatus.EXPIRED or not request.last_renewal_error:
                self._retire(request)
            return

        backoff = timedelta(hours=self._config.renewal.backoff_hours)
        if request.last_renewal_attempt is not None and now - request.last_renewal_attempt < backoff:
            self._log(LogLevel.DEBUG, f"Skipping {domain}, last attempt within backoff window", {
                "request_id": request.id,
                "last_renewal_attempt": request.last_renewal_attempt.isoformat(),
            })
            return

        request.renewal_attempts += 1
        request.last_renewal_attempt = now
        self._store.update(request)
        self._store.save()
        report.attempted += 1
        self._log(LogLevel.INFO, f"Renewing {domain}", {
            "request_id": request.id,
            "attempt": request.renewal_attempts,
            "max_attempts": request.max_renewal_attempts,
        })

        site = await self._resolve_site(request)
        if site is None:
            self._record_failure(request, report, f"Could not find a site for {', '.join(request.subject_alternative_names)}")
            return

        try:
            result = await self._session.issue(request)
        except Exception as e:
            if self._logger:
                self._logger.log_error(self.COMPONENT, f"Issuance failed for {domain}", e, {"request_id": request.id})
            self._record_failure(request, report, str(e))
            return

        if result.port80_fixes:
            report.renewed_with_fix.append(domain)
        else:
            report.renewed.append(domain)

    async def _resolve_site(self, request: CertificateRequest) -> Optional[WebSite]:
        for domain in request.subject_alternative_names:
            site = await self._bindings.find_site_for_hostname(domain)
            if site is not None:
                return site
        return None

    def _retire(self, request: CertificateRequest) -> None:
        last = request.last_renewal_attempt.isoformat() if request.last_renewal_attempt else "never"
        request.status = CertificateRequestStatus.EXPIRED
        request.last_renewal_error = (
            f"Exceeded maximum renewal attempts ({request.max_renewal_attempts}). Last attempt: {last}"
        )
        self._store.update(request)
        self._store.save()
        self._log(LogLevel.WARN, f"Giving up on {request.common_name}", {
            "request_id": request.id,
            "reason": request.last_renewal_error,
        })

    def _record_failure(self, request: CertificateRequest, report: RenewalReport, error: str) -> None:
        stored = self._store.get_by_id(request.id)
        if stored is not None and self._issued_since(request, stored):
            # The session persisted a new certificate before failing; keep it
            self._log(LogLevel.WARN, f"Keeping certificate issued for {request.common_name} despite error", {
                "request_id": request.id,
                "status": stored.status.value,
                "error": error,
            })
            report.failed.append(RenewalFailure(domain=request.common_name, error=error))
            return

        message = error
        if request.renewal_exhausted:
            request.status = CertificateRequestStatus.EXPIRED
            message = f"Failed after {request.renewal_attempts} attempts: {error}"
        request.last_renewal_error = message
        self._store.update(request)
        self._store.save()
        report.failed.append(RenewalFailure(domain=request.common_name, error=message))

    @staticmethod
    def _issued_since(request: CertificateRequest, stored: CertificateRequest) -> bool:
        if stored.status not in (CertificateRequestStatus.ISSUED, CertificateRequestStatus.COMPLETED):
            return False
        if stored.expiration_date is None:
            return False
        return request.expiration_date is None or stored.expiration_date > request.expiration_date

    def _retrying(self) -> list[RetryingCertificate]:
        return [
            RetryingCertificate(
                domain=request.common_name,
                attempts=request.renewal_attempts,
                max_attempts=request.max_renewal_attempts,
                last_attempt=request.last_renewal_attempt,
                last_error=request.last_renewal_error,
            )
            for request in self._store.get_all()
            if request.provider == self._provider
            and request.status != CertificateRequestStatus.EXPIRED
            and 0 < request.renewal_attempts < request.max_renewal_attempts
        ]

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, self.COMPONENT, message, data)
