"""
ClientDesk - Compliance Service Tests

Tests for due-date projection, alert generation, scoring and the portfolio
views.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from app.models.client import ClientStatus, DocumentCategory, UploadStatus
from app.schemas.client import BusinessInfo, ClientCreateRequest, TaxPeriod
from app.services.client_service import ClientService
from app.services.compliance_service import (
    AlertSeverity,
    AlertType,
    ComplianceService,
    ComplianceStatus,
    SubmissionDeadline,
    calculate_compliance_status,
    days_until,
    deadline_alert,
    next_corporate_tax_due_date,
    next_vat_due_date,
    project_period_to_trial_year,
)
from app.utils.clock import FixedClock, as_utc_datetime

from conftest import NOW, make_client, make_document, make_person


def utc(year, month, day, hour=0, minute=0, second=0):
    return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)


def period(start: date, end: date) -> TaxPeriod:
    return TaxPeriod(start_date=start, end_date=end)


class TestDaysUntil:
    """Whole-day differences."""

    def test_floors_partial_days(self):
        assert days_until(utc(2025, 6, 19), NOW) == 3

    def test_negative_once_passed(self):
        assert days_until(utc(2025, 6, 12), NOW) == -4


class TestNextVatDueDate:
    """VAT submission date projection."""

    def test_first_future_period_wins(self):
        client = make_client(vat_tax_periods=[
            period(date(2025, 5, 1), date(2025, 7, 31)),
            period(date(2025, 2, 1), date(2025, 4, 30)),
        ])
        deadline = next_vat_due_date(client, NOW)

        assert deadline.submission_date == utc(2025, 8, 28)
        assert deadline.period.end_date == date(2025, 7, 31)
        assert deadline.days_until_due == 73

    def test_due_date_equal_to_now_counts_as_passed(self):
        first = period(date(2025, 2, 19), date(2025, 5, 18))
        second = period(date(2025, 5, 19), date(2025, 8, 18))
        client = make_client(vat_tax_periods=[first, second])

        at_due = next_vat_due_date(client, utc(2025, 6, 15))
        just_before = next_vat_due_date(client, utc(2025, 6, 14, 23, 59, 59))

        assert at_due.submission_date == utc(2025, 9, 15)
        assert just_before.submission_date == utc(2025, 6, 15)
        assert just_before.days_until_due == 0

    def test_stale_periods_projected_onto_trial_year(self):
        client = make_client(vat_tax_periods=[
            period(date(2023, 1, 1), date(2023, 3, 31)),
            period(date(2023, 4, 1), date(2023, 6, 30)),
            period(date(2023, 7, 1), date(2023, 9, 30)),
            period(date(2023, 10, 1), date(2023, 12, 31)),
        ])
        deadline = next_vat_due_date(client, NOW)

        # Periods starting before June move to 2026, the rest stay in 2025
        assert deadline.submission_date == utc(2025, 10, 28)
        assert deadline.period == period(date(2025, 7, 1), date(2025, 9, 30))
        assert deadline.submission_date == as_utc_datetime(deadline.period.end_date) + timedelta(days=28)
        assert deadline.submission_date > NOW

    def test_leap_day_period_clamps_to_feb_28(self):
        client = make_client(vat_tax_periods=[period(date(2024, 2, 1), date(2024, 2, 29))])
        deadline = next_vat_due_date(client, utc(2025, 3, 10))

        assert deadline.period.end_date == date(2026, 2, 28)
        assert deadline.submission_date == utc(2026, 3, 28)

    def test_year_spanning_period_keeps_its_length(self):
        # Start and end move by the same number of years
        winter = period(date(2023, 12, 1), date(2024, 2, 29))

        assert project_period_to_trial_year(winter, NOW) == period(date(2025, 12, 1), date(2026, 2, 28))
        assert project_period_to_trial_year(winter, utc(2025, 1, 10)) == period(
            date(2025, 12, 1), date(2026, 2, 28),
        )

    def test_year_spanning_period_due_date(self):
        client = make_client(vat_tax_periods=[period(date(2023, 12, 1), date(2024, 2, 29))])

        # December is not before January, so the trial year stays 2025 and
        # the Dec 2024 - Feb 2025 cycle is not considered
        deadline = next_vat_due_date(client, utc(2025, 1, 10))

        assert deadline.period == period(date(2025, 12, 1), date(2026, 2, 28))
        assert deadline.submission_date == utc(2026, 3, 28)

    def test_monthly_cycle_without_periods(self):
        client = make_client(vat_return_cycle="MONTHLY")
        deadline = next_vat_due_date(client, NOW)

        assert deadline.submission_date == utc(2025, 7, 28)
        assert deadline.period is None
        assert deadline.cycle == "MONTHLY"

    def test_monthly_cycle_advances_when_due_passed(self):
        client = make_client(vat_return_cycle="MONTHLY")
        deadline = next_vat_due_date(client, utc(2025, 7, 29))

        assert deadline.submission_date == utc(2025, 8, 28)

    def test_quarterly_cycle_wraps_into_next_year(self):
        client = make_client(vat_return_cycle="QUARTERLY")
        deadline = next_vat_due_date(client, utc(2025, 12, 15))

        assert deadline.submission_date == utc(2026, 1, 28)

    def test_quarterly_cycle_after_quarter_due(self):
        client = make_client(vat_return_cycle="quarterly")
        deadline = next_vat_due_date(client, utc(2025, 10, 29))

        assert deadline.submission_date == utc(2026, 1, 28)

    def test_unrecognized_cycle_returns_none(self):
        assert next_vat_due_date(make_client(vat_return_cycle="ANNUAL"), NOW) is None

    def test_nothing_configured_returns_none(self):
        assert next_vat_due_date(make_client(), NOW) is None


class TestNextCorporateTaxDueDate:
    """Corporate Tax due date roll-forward."""

    def test_future_date_used_as_is(self):
        client = make_client(corporate_tax_due_date=date(2025, 9, 30))
        deadline = next_corporate_tax_due_date(client, NOW)
        assert deadline.submission_date == utc(2025, 9, 30)

    def test_past_date_rolled_one_year(self):
        client = make_client(corporate_tax_due_date=date(2025, 6, 1))
        deadline = next_corporate_tax_due_date(client, NOW)
        assert deadline.submission_date == utc(2026, 6, 1)

    def test_repeated_calls_are_stable(self):
        client = make_client(corporate_tax_due_date=date(2025, 6, 1))
        first = next_corporate_tax_due_date(client, NOW)
        second = next_corporate_tax_due_date(client, NOW)
        assert first == second

    def test_absent_returns_none(self):
        assert next_corporate_tax_due_date(make_client(), NOW) is None


class TestComplianceScore:
    """Score and status from verified documents."""

    def test_all_verified_is_compliant(self, all_documents_verified):
        report = calculate_compliance_status(make_client(documents=all_documents_verified), NOW)

        assert report.compliance_score == 100
        assert report.status == ComplianceStatus.COMPLIANT
        assert report.alerts == []
        assert report.missing_documents == []

    def test_nothing_verified(self):
        report = calculate_compliance_status(make_client(), NOW)

        assert report.compliance_score == 0
        assert report.status == ComplianceStatus.WARNING
        assert [a.type for a in report.alerts] == [AlertType.MISSING_DOCUMENT] * 3
        assert report.missing_documents == [
            "TRADE_LICENSE", "VAT_CERTIFICATE", "CORPORATE_TAX_CERTIFICATE",
        ]

    def test_uploaded_but_unverified_counts_as_missing(self):
        documents = [
            make_document(DocumentCategory.TRADE_LICENSE),
            make_document(DocumentCategory.VAT_CERTIFICATE, upload_status=UploadStatus.UPLOADED),
        ]
        report = calculate_compliance_status(make_client(documents=documents), NOW)

        assert report.compliance_score == 33
        assert "VAT_CERTIFICATE" in report.missing_documents


class TestComplianceAlerts:
    """Alert generation and ordering."""

    def test_expiring_license_medium_band(self, all_documents_verified):
        client = make_client(documents=all_documents_verified, license_expiry_date=date(2025, 8, 1))
        report = calculate_compliance_status(client, NOW)

        assert len(report.alerts) == 1
        assert report.alerts[0].type == AlertType.EXPIRING_LICENSE
        assert report.alerts[0].severity == AlertSeverity.MEDIUM
        assert report.expiring_documents[0].type == "TRADE_LICENSE"
        assert report.status == ComplianceStatus.COMPLIANT

    def test_expired_license_is_critical(self, all_documents_verified):
        client = make_client(documents=all_documents_verified, license_expiry_date=date(2025, 1, 1))
        report = calculate_compliance_status(client, NOW)

        assert report.alerts[0].type == AlertType.EXPIRED_LICENSE
        assert report.status == ComplianceStatus.CRITICAL

    def test_vat_alert_follows_next_due_date(self, all_documents_verified):
        client = make_client(
            documents=all_documents_verified,
            vat_tax_periods=[
                period(date(2025, 1, 1), date(2025, 3, 31)),
                period(date(2025, 4, 1), date(2025, 6, 30)),
            ],
        )
        now = utc(2025, 5, 1)

        deadline = next_vat_due_date(client, now)
        report = calculate_compliance_status(client, now)

        # Q1 was due 2025-04-28; the next return is Q2, far outside the window
        assert deadline.submission_date == utc(2025, 7, 28)
        assert deadline.days_until_due == 88
        assert report.alerts == []
        assert report.status == ComplianceStatus.COMPLIANT

    def test_vat_due_soon(self, all_documents_verified):
        client = make_client(
            documents=all_documents_verified,
            vat_tax_periods=[period(date(2025, 5, 1), date(2025, 5, 28))],
        )
        report = calculate_compliance_status(client, NOW)

        assert [a.type for a in report.alerts] == [AlertType.VAT_RETURN_DUE]
        assert report.alerts[0].severity == AlertSeverity.HIGH
        assert report.alerts[0].days_until_due == 9
        assert report.alerts[0].due_date == utc(2025, 6, 25)

    def test_cycle_without_periods_gives_generic_advisory(self, all_documents_verified):
        client = make_client(documents=all_documents_verified, vat_return_cycle="MONTHLY")
        report = calculate_compliance_status(client, NOW)

        assert len(report.alerts) == 1
        advisory = report.alerts[0]
        assert advisory.type == AlertType.VAT_RETURN_DUE
        assert advisory.severity == AlertSeverity.MEDIUM
        assert advisory.due_date is None

    def test_identity_documents(self, all_documents_verified):
        partner = make_person(name="Ahmed Ali", emirates_id_expiry=date(2025, 6, 1))
        manager = make_person(name="Sara Khan", passport_expiry=date(2025, 8, 1))
        far = make_person(name="Omar Said", passport_expiry=date(2025, 12, 1))
        client = make_client(
            documents=all_documents_verified,
            partners=[partner, far],
            managers=[manager],
        )
        report = calculate_compliance_status(client, NOW)

        by_type = {a.type: a for a in report.alerts}
        assert set(by_type) == {AlertType.EXPIRED_EMIRATES_ID, AlertType.EXPIRING_PASSPORT}
        assert by_type[AlertType.EXPIRED_EMIRATES_ID].severity == AlertSeverity.HIGH
        assert by_type[AlertType.EXPIRED_EMIRATES_ID].person_id == partner.id
        assert by_type[AlertType.EXPIRING_PASSPORT].person_name == "Sara Khan"

    def test_severity_dominates_ordering(self):
        documents = [
            make_document(DocumentCategory.TRADE_LICENSE),
            make_document(DocumentCategory.VAT_CERTIFICATE),
        ]
        client = make_client(
            documents=documents,
            license_expiry_date=date(2025, 6, 12),
            corporate_tax_due_date=date(2025, 6, 19),
            vat_tax_periods=[period(date(2025, 5, 1), date(2025, 5, 28))],
            managers=[make_person(name="Sara Khan", passport_expiry=date(2025, 6, 26))],
        )
        report = calculate_compliance_status(client, NOW)

        assert [a.type for a in report.alerts] == [
            AlertType.TAX_DUE_DATE,        # CRITICAL, 3 days ahead
            AlertType.EXPIRED_LICENSE,     # CRITICAL, 4 days overdue
            AlertType.VAT_RETURN_DUE,      # HIGH, 9 days
            AlertType.MISSING_DOCUMENT,    # HIGH, undated
            AlertType.EXPIRING_PASSPORT,   # MEDIUM, 10 days
        ]
        assert report.alerts[1].days_overdue == 4
        assert report.status == ComplianceStatus.CRITICAL
        assert report.compliance_score == 67

    def test_corporate_tax_due_soon(self, all_documents_verified):
        client = make_client(documents=all_documents_verified, corporate_tax_due_date=date(2025, 6, 19))
        report = calculate_compliance_status(client, NOW)

        assert [a.type for a in report.alerts] == [AlertType.TAX_DUE_DATE]
        assert report.alerts[0].severity == AlertSeverity.CRITICAL
        assert report.alerts[0].days_until_due == 3

    def test_passed_corporate_tax_date_rolls_forward(self, all_documents_verified):
        client = make_client(documents=all_documents_verified, corporate_tax_due_date=date(2025, 6, 10))
        report = calculate_compliance_status(client, NOW)

        assert next_corporate_tax_due_date(client, NOW).submission_date == utc(2026, 6, 10)
        assert report.alerts == []
        assert report.status == ComplianceStatus.COMPLIANT

    def test_report_serializes(self, all_documents_verified):
        client = make_client(documents=all_documents_verified, license_expiry_date=date(2025, 7, 6))
        data = calculate_compliance_status(client, NOW).to_dict()

        assert data["status"] == "WARNING"
        assert data["alerts"][0]["type"] == "EXPIRING_LICENSE"
        assert data["expiring_documents"][0]["days_until_expiry"] == 20


class TestDeadlineAlert:
    """Alert windows for a computed deadline."""

    def deadline(self, days):
        return SubmissionDeadline(submission_date=NOW + timedelta(days=days), days_until_due=days)

    def alert(self, days):
        return deadline_alert(
            self.deadline(days),
            AlertType.VAT_RETURN_OVERDUE,
            AlertType.VAT_RETURN_DUE,
            "VAT return",
            DocumentCategory.VAT_CERTIFICATE.value,
        )

    def test_recently_overdue_is_critical(self):
        alert = self.alert(-3)

        assert alert.type == AlertType.VAT_RETURN_OVERDUE
        assert alert.severity == AlertSeverity.CRITICAL
        assert alert.days_overdue == 3
        assert alert.days_until_due == -3

    def test_overdue_window_edges(self):
        assert self.alert(-7).type == AlertType.VAT_RETURN_OVERDUE
        assert self.alert(-8) is None

    def test_upcoming_bands(self):
        assert self.alert(0).severity == AlertSeverity.CRITICAL
        assert self.alert(7).severity == AlertSeverity.CRITICAL
        assert self.alert(8).severity == AlertSeverity.HIGH
        assert self.alert(14).severity == AlertSeverity.HIGH
        assert self.alert(15).severity == AlertSeverity.MEDIUM
        assert self.alert(30).type == AlertType.VAT_RETURN_DUE
        assert self.alert(31) is None

    def test_no_deadline(self):
        assert deadline_alert(
            None, AlertType.TAX_DUE_DATE, AlertType.TAX_DUE_DATE, "Corporate Tax", "CORPORATE_TAX_CERTIFICATE",
        ) is None


class TestPortfolio:
    """Alerts and submissions across active clients."""

    async def _create(self, db_session, name, status=ClientStatus.ACTIVE, **business_info):
        return await ClientService(db_session).create_client(ClientCreateRequest(
            name=name,
            status=status,
            business_info=BusinessInfo(**business_info),
        ))

    @pytest.mark.asyncio
    async def test_get_all_alerts(self, db_session, fixed_clock):
        await self._create(db_session, "Falcon Trading LLC", license_expiry_date=date(2025, 7, 1))
        await self._create(db_session, "Oasis Foods LLC", corporate_tax_due_date=date(2025, 6, 20))
        await self._create(
            db_session, "Dormant LLC", status=ClientStatus.INACTIVE, license_expiry_date=date(2025, 1, 1),
        )

        result = await ComplianceService(db_session, clock=fixed_clock).get_all_alerts()

        client_names = {a["client_name"] for a in result["alerts"]}
        assert client_names == {"Falcon Trading LLC", "Oasis Foods LLC"}
        assert result["alerts"][0]["severity"] == "CRITICAL"
        assert result["alerts"][0]["type"] == "TAX_DUE_DATE"
        assert [d["type"] for d in result["deadlines"]] == ["CORPORATE_TAX_DUE", "TRADE_LICENSE"]
        assert result["total_alerts"] == len(result["alerts"])

    @pytest.mark.asyncio
    async def test_get_all_alerts_filters(self, db_session, fixed_clock):
        await self._create(db_session, "Falcon Trading LLC", license_expiry_date=date(2025, 7, 1))

        service = ComplianceService(db_session, clock=fixed_clock)
        by_type = await service.get_all_alerts(alert_type="license")
        by_severity = await service.get_all_alerts(severity=AlertSeverity.CRITICAL)

        assert [a["type"] for a in by_type["alerts"]] == ["EXPIRING_LICENSE"]
        assert by_severity["alerts"] == []

    @pytest.mark.asyncio
    async def test_next_submission_dates(self, db_session):
        await self._create(db_session, "Falcon Trading LLC", vat_return_cycle="MONTHLY")
        await self._create(
            db_session, "Oasis Foods LLC",
            vat_tax_periods=[period(date(2025, 5, 1), date(2025, 6, 10))],
            corporate_tax_due_date=date(2025, 9, 30),
        )

        service = ComplianceService(db_session, clock=FixedClock(NOW))
        result = await service.get_next_submission_dates()

        assert result["next_vat_submission"]["client_name"] == "Oasis Foods LLC"
        assert result["next_vat_submission"]["submission_date"].startswith("2025-07-08")
        assert result["next_corporate_tax_submission"]["client_name"] == "Oasis Foods LLC"
