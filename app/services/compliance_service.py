"""
ClientDesk - Compliance Service

Due-date projection and compliance reporting for client files.

The module-level functions are pure: they take a client record and the
current instant and never touch the database or the system clock. VAT and
Corporate Tax due dates are computed here once and reused by alerting, the
portfolio deadline feed and the next-submission lookup.

VAT due dates:
- With tax periods: period end + 28 days; the first period whose due date is
  strictly after `now` wins. When every stored period has passed, periods are
  projected onto a trial year (same month/day) and the earliest future due
  date is used.
- Without tax periods: the current month (MONTHLY) or calendar quarter
  (QUARTERLY) end + 28 days, advanced one period if already passed.

VAT and Corporate Tax alerts are derived only from these computed deadlines.
"""

import logging
import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.client import DocumentCategory, UploadStatus, VatReturnCycle
from app.schemas.client import ClientRecord, IdentityDocument, PersonRecord, TaxPeriod
from app.services.client_service import ClientService
from app.utils.clock import Clock, as_utc_datetime, system_clock

logger = logging.getLogger(__name__)


# ===========================================
# CONFIGURATION CONSTANTS
# ===========================================

VAT_FILING_WINDOW = timedelta(days=settings.vat_filing_window_days)
IDENTITY_EXPIRY_HORIZON = timedelta(days=settings.identity_expiry_horizon_days)
LICENSE_HIGH_WARNING = timedelta(days=settings.license_high_warning_days)
LICENSE_MEDIUM_WARNING = timedelta(days=settings.license_medium_warning_days)
DUE_DATE_ALERT_WINDOW_DAYS = settings.due_date_alert_window_days
OVERDUE_ALERT_WINDOW_DAYS = settings.overdue_alert_window_days
DUE_DATE_CRITICAL_DAYS = settings.due_date_critical_days
DUE_DATE_HIGH_DAYS = settings.due_date_high_days

REQUIRED_DOCUMENT_CATEGORIES = (
    DocumentCategory.TRADE_LICENSE,
    DocumentCategory.VAT_CERTIFICATE,
    DocumentCategory.CORPORATE_TAX_CERTIFICATE,
)

SECONDS_PER_DAY = 86400


class AlertSeverity(str, Enum):
    """Alert severity, most urgent first."""
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


SEVERITY_RANK = {
    AlertSeverity.CRITICAL: 0,
    AlertSeverity.HIGH: 1,
    AlertSeverity.MEDIUM: 2,
    AlertSeverity.LOW: 3,
}


class AlertType(str, Enum):
    """Kinds of compliance alerts."""
    MISSING_DOCUMENT = "MISSING_DOCUMENT"
    EXPIRED_LICENSE = "EXPIRED_LICENSE"
    EXPIRING_LICENSE = "EXPIRING_LICENSE"
    VAT_RETURN_OVERDUE = "VAT_RETURN_OVERDUE"
    VAT_RETURN_DUE = "VAT_RETURN_DUE"
    TAX_DUE_DATE = "TAX_DUE_DATE"
    EXPIRED_EMIRATES_ID = "EXPIRED_EMIRATES_ID"
    EXPIRING_EMIRATES_ID = "EXPIRING_EMIRATES_ID"
    EXPIRED_PASSPORT = "EXPIRED_PASSPORT"
    EXPIRING_PASSPORT = "EXPIRING_PASSPORT"


class ComplianceStatus(str, Enum):
    """Overall compliance status of a client."""
    COMPLIANT = "COMPLIANT"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


# ===========================================
# RESULT TYPES
# ===========================================

@dataclass
class SubmissionDeadline:
    """Next filing date for a tax return."""
    submission_date: datetime
    days_until_due: int
    period: Optional[TaxPeriod] = None
    cycle: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "submission_date": self.submission_date.isoformat(),
            "days_until_due": self.days_until_due,
            "period": {
                "start_date": self.period.start_date.isoformat(),
                "end_date": self.period.end_date.isoformat(),
            } if self.period else None,
            "cycle": self.cycle,
        }


@dataclass
class Alert:
    """
    A derived compliance alert. Never persisted.

    `days_until_due` is signed: negative means the date has passed, in which
    case `days_overdue` carries the positive count.
    """
    type: AlertType
    severity: AlertSeverity
    message: str
    category: Optional[str] = None
    due_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    days_until_due: Optional[int] = None
    days_overdue: Optional[int] = None
    person_id: Optional[uuid.UUID] = None
    person_name: Optional[str] = None
    client_id: Optional[uuid.UUID] = None
    client_name: Optional[str] = None

    @property
    def is_overdue(self) -> bool:
        return self.days_until_due is not None and self.days_until_due < 0

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
        }
        optional = {
            "category": self.category,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "days_until_due": self.days_until_due,
            "days_overdue": self.days_overdue,
            "person_id": str(self.person_id) if self.person_id else None,
            "person_name": self.person_name,
            "client_id": str(self.client_id) if self.client_id else None,
            "client_name": self.client_name,
        }
        result.update({k: v for k, v in optional.items() if v is not None})
        return result


@dataclass
class ExpiringDocument:
    """A business document that has expired or expires soon."""
    type: str
    expiry_date: datetime
    days_until_expiry: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "expiry_date": self.expiry_date.isoformat(),
            "days_until_expiry": self.days_until_expiry,
        }


@dataclass
class ComplianceReport:
    """Compliance score, status and ordered alerts for one client."""
    compliance_score: int
    status: ComplianceStatus
    missing_documents: List[str] = field(default_factory=list)
    expiring_documents: List[ExpiringDocument] = field(default_factory=list)
    alerts: List[Alert] = field(default_factory=list)
    last_updated: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "compliance_score": self.compliance_score,
            "status": self.status.value,
            "missing_documents": self.missing_documents,
            "expiring_documents": [d.to_dict() for d in self.expiring_documents],
            "alerts": [a.to_dict() for a in self.alerts],
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }


@dataclass
class Deadline:
    """Entry of the portfolio deadline feed."""
    client_id: uuid.UUID
    client_name: str
    type: str
    expiry_date: datetime
    days_until_expiry: int
    category: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "client_id": str(self.client_id),
            "client_name": self.client_name,
            "type": self.type,
            "expiry_date": self.expiry_date.isoformat(),
            "days_until_expiry": self.days_until_expiry,
            "category": self.category,
        }


# ===========================================
# DATE HELPERS
# ===========================================

def days_until(target: datetime, now: datetime) -> int:
    """Whole days from `now` to `target`, floored; negative once passed."""
    return math.floor((target - now).total_seconds() / SECONDS_PER_DAY)


def format_date(value: datetime) -> str:
    return value.strftime("%d/%m/%Y")


def vat_period_due_date(period: TaxPeriod) -> datetime:
    """Filing deadline of a VAT period."""
    return as_utc_datetime(period.end_date) + VAT_FILING_WINDOW


def _shift_period(period: TaxPeriod, years: int) -> TaxPeriod:
    # relativedelta clamps Feb 29 to Feb 28 in non-leap years
    return TaxPeriod(
        start_date=period.start_date + relativedelta(years=years),
        end_date=period.end_date + relativedelta(years=years),
    )


def project_period_to_trial_year(period: TaxPeriod, now: datetime) -> TaxPeriod:
    """
    Move a recurring period onto the current cycle.

    The trial year is the current year, or the next one when the period
    starts in a month before the current month.
    """
    year = now.year + 1 if period.start_date.month < now.month else now.year
    return _shift_period(period, year - period.start_date.year)


def _sorted_periods(client: ClientRecord) -> List[TaxPeriod]:
    return sorted(client.business_info.vat_tax_periods, key=lambda p: p.start_date)


def _last_day_of_month(year: int, month: int) -> date:
    return date(year, month, 1) + relativedelta(months=1, days=-1)


def _cycle_period_end(cycle: str, year: int, month: int) -> date:
    """End of the month (MONTHLY) or calendar quarter (QUARTERLY) containing year/month."""
    if cycle == VatReturnCycle.QUARTERLY.value:
        quarter_end_month = 3 * ((month - 1) // 3) + 3
        return _last_day_of_month(year, quarter_end_month)
    return _last_day_of_month(year, month)


# ===========================================
# DUE DATES
# ===========================================

def next_vat_due_date(client: ClientRecord, now: datetime) -> Optional[SubmissionDeadline]:
    """
    Next VAT return submission date, or None when nothing is configured.

    A due date equal to `now` counts as passed.
    """
    now = as_utc_datetime(now)
    business_info = client.business_info
    periods = _sorted_periods(client)

    if periods:
        for period in periods:
            due = vat_period_due_date(period)
            if due > now:
                return SubmissionDeadline(
                    submission_date=due,
                    days_until_due=days_until(due, now),
                    period=period,
                    cycle=business_info.vat_return_cycle,
                )

        # Every stored period has passed: treat them as a recurring cycle
        best: Optional[TaxPeriod] = None
        best_due: Optional[datetime] = None
        for period in periods:
            projected = project_period_to_trial_year(period, now)
            due = vat_period_due_date(projected)
            if due > now and (best_due is None or due < best_due):
                best, best_due = projected, due

        if best is None:
            best = _shift_period(project_period_to_trial_year(periods[0], now), 1)
            best_due = vat_period_due_date(best)

        return SubmissionDeadline(
            submission_date=best_due,
            days_until_due=days_until(best_due, now),
            period=best,
            cycle=business_info.vat_return_cycle,
        )

    cycle = (business_info.vat_return_cycle or "").upper()
    if cycle not in (VatReturnCycle.MONTHLY.value, VatReturnCycle.QUARTERLY.value):
        return None

    step = relativedelta(months=3 if cycle == VatReturnCycle.QUARTERLY.value else 1)
    anchor = date(now.year, now.month, 1)
    period_end = _cycle_period_end(cycle, anchor.year, anchor.month)
    due = as_utc_datetime(period_end) + VAT_FILING_WINDOW
    if due <= now:
        anchor = anchor + step
        period_end = _cycle_period_end(cycle, anchor.year, anchor.month)
        due = as_utc_datetime(period_end) + VAT_FILING_WINDOW

    return SubmissionDeadline(
        submission_date=due,
        days_until_due=days_until(due, now),
        cycle=cycle,
    )


def next_corporate_tax_due_date(client: ClientRecord, now: datetime) -> Optional[SubmissionDeadline]:
    """Corporate Tax due date, rolled forward one year if already past."""
    stored = client.business_info.corporate_tax_due_date
    if stored is None:
        return None

    now = as_utc_datetime(now)
    due = as_utc_datetime(stored)
    if due < now:
        due = due + relativedelta(years=1)

    return SubmissionDeadline(submission_date=due, days_until_due=days_until(due, now))


# ===========================================
# COMPLIANCE REPORT
# ===========================================

def due_date_severity(days: int) -> AlertSeverity:
    """Severity band for an upcoming deadline."""
    if days <= DUE_DATE_CRITICAL_DAYS:
        return AlertSeverity.CRITICAL
    if days <= DUE_DATE_HIGH_DAYS:
        return AlertSeverity.HIGH
    return AlertSeverity.MEDIUM


def alert_sort_key(alert: Alert):
    """
    Severity first; within a severity, upcoming before overdue, then by days.

    Undated alerts sort with the upcoming group, after every dated one.
    """
    days = alert.days_until_due
    overdue = 1 if alert.is_overdue else 0
    return (SEVERITY_RANK[alert.severity], overdue, days if days is not None else math.inf)


def sort_alerts(alerts: List[Alert]) -> List[Alert]:
    return sorted(alerts, key=alert_sort_key)


def _missing_document_alerts(client: ClientRecord, missing: List[str]) -> List[Alert]:
    alerts = []
    for category in REQUIRED_DOCUMENT_CATEGORIES:
        document = client.find_document(category)
        if document is None or document.upload_status != UploadStatus.VERIFIED:
            missing.append(category.value)
            alerts.append(Alert(
                type=AlertType.MISSING_DOCUMENT,
                severity=AlertSeverity.HIGH,
                message=f"Missing or unverified {category.value.replace('_', ' ').lower()}",
                category=category.value,
            ))
    return alerts


def _license_alerts(
    client: ClientRecord,
    now: datetime,
    expiring: List[ExpiringDocument],
) -> List[Alert]:
    expiry_value = client.business_info.license_expiry_date
    if expiry_value is None:
        return []

    expiry = as_utc_datetime(expiry_value)
    days = days_until(expiry, now)

    if expiry < now:
        alert = Alert(
            type=AlertType.EXPIRED_LICENSE,
            severity=AlertSeverity.CRITICAL,
            message="Trade License has expired",
            category=DocumentCategory.TRADE_LICENSE.value,
            expiry_date=expiry,
            days_until_due=days,
            days_overdue=-days,
        )
    elif expiry <= now + LICENSE_HIGH_WARNING:
        alert = Alert(
            type=AlertType.EXPIRING_LICENSE,
            severity=AlertSeverity.HIGH,
            message=f"Trade License expires in {days} days",
            category=DocumentCategory.TRADE_LICENSE.value,
            expiry_date=expiry,
            days_until_due=days,
        )
    elif expiry <= now + LICENSE_MEDIUM_WARNING:
        alert = Alert(
            type=AlertType.EXPIRING_LICENSE,
            severity=AlertSeverity.MEDIUM,
            message=f"Trade License expires in {days} days",
            category=DocumentCategory.TRADE_LICENSE.value,
            expiry_date=expiry,
            days_until_due=days,
        )
    else:
        return []

    expiring.append(ExpiringDocument(
        type=DocumentCategory.TRADE_LICENSE.value,
        expiry_date=expiry,
        days_until_expiry=days,
    ))
    return [alert]


def deadline_alert(
    deadline: Optional[SubmissionDeadline],
    overdue_type: AlertType,
    due_type: AlertType,
    label: str,
    category: str,
) -> Optional[Alert]:
    """
    Overdue or upcoming alert for a computed submission deadline.

    Overdue deadlines older than the overdue window and deadlines beyond the
    alert window produce nothing.
    """
    if deadline is None:
        return None

    days = deadline.days_until_due
    due = deadline.submission_date
    if -OVERDUE_ALERT_WINDOW_DAYS <= days < 0:
        return Alert(
            type=overdue_type,
            severity=AlertSeverity.CRITICAL,
            message=f"{label} overdue by {-days} days (due {format_date(due)})",
            category=category,
            due_date=due,
            days_until_due=days,
            days_overdue=-days,
        )
    if 0 <= days <= DUE_DATE_ALERT_WINDOW_DAYS:
        period_label = ""
        if deadline.period is not None:
            period_label = (
                f" for period {format_date(as_utc_datetime(deadline.period.start_date))}"
                f" - {format_date(as_utc_datetime(deadline.period.end_date))}"
            )
        return Alert(
            type=due_type,
            severity=due_date_severity(days),
            message=f"{label} due in {days} days (due {format_date(due)}){period_label}",
            category=category,
            due_date=due,
            days_until_due=days,
        )
    return None


def _vat_alerts(client: ClientRecord, now: datetime) -> List[Alert]:
    business_info = client.business_info
    category = DocumentCategory.VAT_CERTIFICATE.value

    if not business_info.vat_tax_periods:
        if business_info.vat_return_cycle:
            return [Alert(
                type=AlertType.VAT_RETURN_DUE,
                severity=AlertSeverity.MEDIUM,
                message=(
                    f"VAT return due on a {business_info.vat_return_cycle.lower()} cycle; "
                    "add tax periods to track exact due dates"
                ),
                category=category,
            )]
        return []

    alert = deadline_alert(
        next_vat_due_date(client, now),
        AlertType.VAT_RETURN_OVERDUE,
        AlertType.VAT_RETURN_DUE,
        "VAT return",
        category,
    )
    return [alert] if alert else []


def _corporate_tax_alerts(client: ClientRecord, now: datetime) -> List[Alert]:
    alert = deadline_alert(
        next_corporate_tax_due_date(client, now),
        AlertType.TAX_DUE_DATE,
        AlertType.TAX_DUE_DATE,
        "Corporate Tax",
        DocumentCategory.CORPORATE_TAX_CERTIFICATE.value,
    )
    return [alert] if alert else []


def _identity_document_alert(
    person: PersonRecord,
    document: Optional[IdentityDocument],
    label: str,
    expired_type: AlertType,
    expiring_type: AlertType,
    now: datetime,
) -> Optional[Alert]:
    if document is None or document.expiry_date is None:
        return None

    expiry = as_utc_datetime(document.expiry_date)
    days = days_until(expiry, now)
    if expiry < now:
        return Alert(
            type=expired_type,
            severity=AlertSeverity.HIGH,
            message=f"{label} expired for {person.name}",
            expiry_date=expiry,
            days_until_due=days,
            days_overdue=-days,
            person_id=person.id,
            person_name=person.name,
        )
    if expiry <= now + IDENTITY_EXPIRY_HORIZON:
        return Alert(
            type=expiring_type,
            severity=AlertSeverity.MEDIUM,
            message=f"{label} expiring soon for {person.name}",
            expiry_date=expiry,
            days_until_due=days,
            person_id=person.id,
            person_name=person.name,
        )
    return None


def _person_alerts(client: ClientRecord, now: datetime) -> List[Alert]:
    alerts = []
    for person in [*client.partners, *client.managers]:
        for alert in (
            _identity_document_alert(
                person, person.emirates_id, "Emirates ID",
                AlertType.EXPIRED_EMIRATES_ID, AlertType.EXPIRING_EMIRATES_ID, now,
            ),
            _identity_document_alert(
                person, person.passport, "Passport",
                AlertType.EXPIRED_PASSPORT, AlertType.EXPIRING_PASSPORT, now,
            ),
        ):
            if alert is not None:
                alerts.append(alert)
    return alerts


def calculate_compliance_status(client: ClientRecord, now: datetime) -> ComplianceReport:
    """
    Build the compliance report for a client at instant `now`.

    Score is the rounded percentage of required documents that are VERIFIED.
    Status is CRITICAL with any critical alert, WARNING with any high alert,
    COMPLIANT otherwise.
    """
    now = as_utc_datetime(now)
    missing_documents: List[str] = []
    expiring_documents: List[ExpiringDocument] = []

    alerts: List[Alert] = []
    alerts.extend(_missing_document_alerts(client, missing_documents))
    alerts.extend(_license_alerts(client, now, expiring_documents))
    alerts.extend(_vat_alerts(client, now))
    alerts.extend(_corporate_tax_alerts(client, now))
    alerts.extend(_person_alerts(client, now))

    total = len(REQUIRED_DOCUMENT_CATEGORIES)
    verified = total - len(missing_documents)
    score = int(round(100 * verified / total)) if total else 0

    if any(a.severity == AlertSeverity.CRITICAL for a in alerts):
        status = ComplianceStatus.CRITICAL
    elif any(a.severity == AlertSeverity.HIGH for a in alerts):
        status = ComplianceStatus.WARNING
    else:
        status = ComplianceStatus.COMPLIANT

    return ComplianceReport(
        compliance_score=score,
        status=status,
        missing_documents=missing_documents,
        expiring_documents=expiring_documents,
        alerts=sort_alerts(alerts),
        last_updated=now,
    )


# ===========================================
# PORTFOLIO SERVICE
# ===========================================

def _matches_type(alert_type: Optional[str], *candidates: str) -> bool:
    if not alert_type:
        return True
    needle = alert_type.lower()
    return any(c in needle for c in candidates)


class ComplianceService:
    """Compliance views across one or all clients of the practice."""

    def __init__(self, db: AsyncSession, clock: Clock = system_clock):
        self.db = db
        self.clock = clock

    async def get_client_compliance(self, client_id: uuid.UUID) -> ComplianceReport:
        """Compliance report for one client."""
        client = await ClientService(self.db).get_client_record(client_id)
        return calculate_compliance_status(client, self.clock.now())

    async def get_all_alerts(
        self,
        alert_type: Optional[str] = None,
        severity: Optional[AlertSeverity] = None,
    ) -> Dict[str, Any]:
        """
        Alerts and upcoming deadlines for every active client.

        `alert_type` is a case-insensitive substring match on the alert type;
        `severity` is an exact match.
        """
        now = self.clock.now()
        clients = await ClientService(self.db).get_active_client_records()

        all_alerts: List[Alert] = []
        deadlines: List[Deadline] = []

        for client in clients:
            report = calculate_compliance_status(client, now)

            for alert in report.alerts:
                if alert_type and alert_type.lower() not in alert.type.value.lower():
                    continue
                if severity and alert.severity != severity:
                    continue
                all_alerts.append(replace(alert, client_id=client.id, client_name=client.name))

            for document in report.expiring_documents:
                if alert_type and alert_type.lower() not in document.type.lower():
                    continue
                deadlines.append(Deadline(
                    client_id=client.id,
                    client_name=client.name,
                    type=document.type,
                    expiry_date=document.expiry_date,
                    days_until_expiry=document.days_until_expiry,
                    category=document.type,
                ))

            corporate_tax = next_corporate_tax_due_date(client, now)
            if corporate_tax is not None and _matches_type(alert_type, "corporate", "tax"):
                deadlines.append(Deadline(
                    client_id=client.id,
                    client_name=client.name,
                    type="CORPORATE_TAX_DUE",
                    expiry_date=corporate_tax.submission_date,
                    days_until_expiry=corporate_tax.days_until_due,
                    category=DocumentCategory.CORPORATE_TAX_CERTIFICATE.value,
                ))

            license_expiry = client.business_info.license_expiry_date
            already_listed = any(d.type == DocumentCategory.TRADE_LICENSE.value for d in report.expiring_documents)
            if license_expiry and not already_listed and _matches_type(alert_type, "license", "trade"):
                expiry = as_utc_datetime(license_expiry)
                deadlines.append(Deadline(
                    client_id=client.id,
                    client_name=client.name,
                    type="TRADE_LICENSE_EXPIRY",
                    expiry_date=expiry,
                    days_until_expiry=days_until(expiry, now),
                    category=DocumentCategory.TRADE_LICENSE.value,
                ))

        deadlines.sort(key=lambda d: d.expiry_date)
        all_alerts = sort_alerts(all_alerts)

        logger.info(f"Computed {len(all_alerts)} alerts and {len(deadlines)} deadlines for {len(clients)} clients")

        return {
            "alerts": [a.to_dict() for a in all_alerts],
            "deadlines": [d.to_dict() for d in deadlines],
            "total_alerts": len(all_alerts),
            "total_deadlines": len(deadlines),
        }

    async def get_next_submission_dates(self) -> Dict[str, Any]:
        """Earliest upcoming VAT and Corporate Tax submissions across active clients."""
        now = self.clock.now()
        clients = await ClientService(self.db).get_active_client_records()

        next_vat = None
        next_corporate_tax = None
        for client in clients:
            vat = next_vat_due_date(client, now)
            if vat is not None and (next_vat is None or vat.submission_date < next_vat[0].submission_date):
                next_vat = (vat, client)

            corporate_tax = next_corporate_tax_due_date(client, now)
            if corporate_tax is not None and (
                next_corporate_tax is None
                or corporate_tax.submission_date < next_corporate_tax[0].submission_date
            ):
                next_corporate_tax = (corporate_tax, client)

        def annotate(entry):
            if entry is None:
                return None
            deadline, client = entry
            return {**deadline.to_dict(), "client_id": str(client.id), "client_name": client.name}

        return {
            "next_vat_submission": annotate(next_vat),
            "next_corporate_tax_submission": annotate(next_corporate_tax),
        }
