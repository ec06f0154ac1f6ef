"""
Tests for provider adapters (raw payload -> NormalizedCostSnapshot).

Tests:
1. Per-provider normalization of realistic payloads
2. Credits and refunds split out of spend
3. Totality: empty payloads normalize to zeros
4. Malformed payloads name the offending field
"""

from datetime import date

import pytest

from costsentry.core.exceptions import NormalizationError, UnsupportedProviderError
from costsentry.schemas.costs import OTHER_SERVICE, SUM_TOLERANCE
from costsentry.services.adapters import ADAPTERS, normalize
from tests.factories import AS_OF


def services(snapshot):
    return {s.name: s for s in snapshot.services}


class TestAwsAdapter:

    PAYLOAD = {
        "ResultsByTime": [
            {
                "TimePeriod": {"Start": "2024-02-15", "End": "2024-02-16"},
                "Groups": [{"Keys": ["Amazon EC2"], "Metrics": {"UnblendedCost": {"Amount": "5"}}}],
            },
            {
                "TimePeriod": {"Start": "2024-03-01", "End": "2024-03-02"},
                "Groups": [
                    {"Keys": ["Amazon EC2"], "Metrics": {"UnblendedCost": {"Amount": "10"}}},
                    {"Keys": ["Amazon S3"], "Metrics": {"UnblendedCost": {"Amount": "2"}}},
                ],
            },
            {
                "TimePeriod": {"Start": "2024-03-02", "End": "2024-03-03"},
                "Groups": [
                    {"Keys": ["Amazon EC2"], "Metrics": {"UnblendedCost": {"Amount": "12"}}},
                    {"Keys": ["Amazon S3"], "Metrics": {"UnblendedCost": {"Amount": "-1"}}},
                ],
            },
        ]
    }

    def test_month_totals_and_services(self):
        snapshot = normalize("aws", self.PAYLOAD, account_id="acc-1", as_of=AS_OF)

        assert snapshot.provider_id == "aws"
        assert snapshot.period_start == date(2024, 2, 1)
        assert snapshot.current_month_cost == pytest.approx(24.0)
        assert snapshot.last_month_cost == pytest.approx(5.0)
        assert snapshot.credits == pytest.approx(1.0)

        by_name = services(snapshot)
        assert by_name["Amazon EC2"].cost == pytest.approx(22.0)
        assert by_name["Amazon EC2"].change_pct == pytest.approx(340.0)
        assert by_name["Amazon S3"].change_pct == 0.0
        assert OTHER_SERVICE not in by_name

    def test_daily_series_with_breakdown(self):
        snapshot = normalize("aws", self.PAYLOAD, account_id="acc-1", as_of=AS_OF)

        assert [d.date for d in snapshot.daily_costs] == [date(2024, 2, 15), date(2024, 3, 1), date(2024, 3, 2)]
        march_first = snapshot.day(date(2024, 3, 1))
        assert march_first.cost == pytest.approx(12.0)
        assert march_first.breakdown == {"Amazon EC2": 10.0, "Amazon S3": 2.0}

    def test_run_rate_forecast(self):
        snapshot = normalize("aws", self.PAYLOAD, account_id="acc-1", as_of=AS_OF)
        # 24 over 10 days, 31 days in March
        assert snapshot.forecast_cost == pytest.approx(74.4)

    def test_provider_forecast_added_to_month_to_date(self):
        payload = {**self.PAYLOAD, "Forecast": {"Total": {"Amount": "50", "Unit": "USD"}}}
        snapshot = normalize("aws", payload, account_id="acc-1", as_of=AS_OF)
        assert snapshot.forecast_cost == pytest.approx(74.0)

    def test_ungrouped_totals_go_to_other(self):
        payload = {"ResultsByTime": [
            {"TimePeriod": {"Start": "2024-03-03"}, "Total": {"UnblendedCost": {"Amount": "7.5"}}},
        ]}
        snapshot = normalize("aws", payload, account_id="acc-1", as_of=AS_OF)
        assert services(snapshot)[OTHER_SERVICE].cost == pytest.approx(7.5)
        assert snapshot.daily_costs[0].breakdown == {}

    def test_rows_outside_period_are_ignored(self):
        payload = {"ResultsByTime": [
            {"TimePeriod": {"Start": "2023-12-01"}, "Total": {"UnblendedCost": {"Amount": "99"}}},
            {"TimePeriod": {"Start": "2024-03-11"}, "Total": {"UnblendedCost": {"Amount": "99"}}},
        ]}
        snapshot = normalize("aws", payload, account_id="acc-1", as_of=AS_OF)
        assert snapshot.daily_costs == []
        assert snapshot.current_month_cost == 0.0

    def test_non_numeric_amount_names_field(self):
        payload = {"ResultsByTime": [
            {"TimePeriod": {"Start": "2024-03-01"}, "Total": {"UnblendedCost": {"Amount": "lots"}}},
        ]}
        with pytest.raises(NormalizationError) as exc:
            normalize("aws", payload, account_id="acc-1", as_of=AS_OF)
        assert exc.value.field == "ResultsByTime[].Total.UnblendedCost.Amount"

    def test_wrong_container_type(self):
        with pytest.raises(NormalizationError) as exc:
            normalize("aws", {"ResultsByTime": "nope"}, account_id="acc-1", as_of=AS_OF)
        assert exc.value.field == "ResultsByTime"


class TestAzureAdapter:

    def test_columns_located_by_name(self):
        payload = {
            "columns": [
                {"name": "PreTaxCost", "type": "Number"},
                {"name": "UsageDate", "type": "Number"},
                {"name": "ServiceName", "type": "String"},
                {"name": "Currency", "type": "String"},
            ],
            "rows": [
                [3.5, 20240301, "Storage", "EUR"],
                [1.5, 20240302, "Virtual Machines", "EUR"],
                [-0.5, 20240302, "Virtual Machines", "EUR"],
            ],
        }
        snapshot = normalize("microsoft", payload, account_id="acc-2", as_of=AS_OF)

        assert snapshot.provider_id == "azure"
        assert snapshot.currency == "EUR"
        assert snapshot.current_month_cost == pytest.approx(5.0)
        assert snapshot.credits == pytest.approx(0.5)
        assert snapshot.day(date(2024, 3, 2)).breakdown == {"Virtual Machines": 1.5}

    def test_rest_response_nested_under_properties(self):
        payload = {"properties": {
            "columns": [{"name": "ServiceName"}, {"name": "Cost"}, {"name": "UsageDate"}],
            "rows": [["Storage", "4.25", "2024-03-05"]],
        }}
        snapshot = normalize("azure", payload, account_id="acc-2", as_of=AS_OF)
        assert services(snapshot)["Storage"].cost == pytest.approx(4.25)

    def test_rows_without_cost_column(self):
        payload = {"columns": [{"name": "ServiceName"}], "rows": [["Storage"]]}
        with pytest.raises(NormalizationError) as exc:
            normalize("azure", payload, account_id="acc-2", as_of=AS_OF)
        assert exc.value.field == "columns"


class TestGcpAdapter:

    def test_credits_split_from_cost(self):
        payload = {"rows": [
            {"service": "Compute Engine", "usage_date": "2024-03-01", "cost": 10.0, "credits": -2.0, "currency": "USD"},
            {"service": "BigQuery", "usage_date": "2024-03-02", "cost": 3.0, "credits": 0},
            {"service": "Compute Engine", "usage_date": "2024-02-20", "cost": 8.0, "credits": 0},
        ]}
        snapshot = normalize("gcp", payload, account_id="acc-3", as_of=AS_OF)

        assert snapshot.current_month_cost == pytest.approx(13.0)
        assert snapshot.last_month_cost == pytest.approx(8.0)
        assert snapshot.credits == pytest.approx(2.0)
        assert services(snapshot)["Compute Engine"].change_pct == pytest.approx(25.0)


class TestInvoiceLevelAdapters:

    def test_digitalocean(self):
        payload = {
            "balance": {"month_to_date_usage": "30.00"},
            "invoices": [
                {"invoice_period": "2024-02", "amount": "55.50"},
                {"invoice_period": "2024-01", "amount": "40.00"},
            ],
            "preview_items": [
                {"product": "Droplets", "amount": "20.00"},
                {"product": "Spaces", "amount": "5.00"},
            ],
        }
        snapshot = normalize("do", payload, account_id="acc-4", as_of=AS_OF)

        assert snapshot.provider_id == "digitalocean"
        assert snapshot.current_month_cost == pytest.approx(30.0)
        assert snapshot.last_month_cost == pytest.approx(55.5)
        assert services(snapshot)[OTHER_SERVICE].cost == pytest.approx(5.0)
        assert abs(snapshot.services_total - snapshot.current_month_cost) <= SUM_TOLERANCE

    def test_daily_costs_synthesized_evenly(self):
        payload = {"balance": {"month_to_date_usage": "30.00"}}
        snapshot = normalize("digitalocean", payload, account_id="acc-4", as_of=AS_OF)

        assert len(snapshot.daily_costs) == 10
        assert snapshot.daily_costs[0].date == date(2024, 3, 1)
        assert snapshot.daily_costs[-1].date == AS_OF
        assert all(d.cost == 3.0 for d in snapshot.daily_costs)

    def test_negative_balance_becomes_credit(self):
        payload = {"balance": {"month_to_date_usage": "-5"}}
        snapshot = normalize("digitalocean", payload, account_id="acc-4", as_of=AS_OF)
        assert snapshot.current_month_cost == 0.0
        assert snapshot.credits == pytest.approx(5.0)

    def test_linode_scales_last_invoice_mix(self):
        payload = {
            "account": {"balance_uninvoiced": 40},
            "invoices": [
                {"id": 2, "date": "2024-03-01T00:00:00", "total": 80},
                {"id": 1, "date": "2024-02-01T00:00:00", "total": 70},
            ],
            "invoice_items": [
                {"type": "linode", "label": "web-1", "amount": 60},
                {"type": "backup", "label": "web-1 backups", "amount": 20},
            ],
        }
        snapshot = normalize("akamai", payload, account_id="acc-5", as_of=AS_OF)

        assert snapshot.last_month_cost == pytest.approx(80.0)
        by_name = services(snapshot)
        assert by_name["Linode"].cost == pytest.approx(30.0)
        assert by_name["Backup"].cost == pytest.approx(10.0)
        assert by_name["Linode"].change_pct == pytest.approx(-50.0)

    def test_vultr_pending_charges(self):
        payload = {
            "account": {"pending_charges": 12.5},
            "pending_charges": [
                {"description": "Cloud Compute", "total": 10},
                {"product": "Block Storage", "total": 2.5},
            ],
            "invoices": [{"date": "2024-03-01T00:00:00+00:00", "amount": "30"}],
        }
        snapshot = normalize("vultr", payload, account_id="acc-6", as_of=AS_OF)

        assert snapshot.current_month_cost == pytest.approx(12.5)
        assert snapshot.last_month_cost == pytest.approx(30.0)
        assert set(services(snapshot)) == {"Cloud Compute", "Block Storage"}

    def test_ibm_usage_reports(self):
        payload = {
            "current": {
                "currency_code": "USD",
                "resources": [
                    {"resource_name": "Kubernetes Service", "billable_cost": 100, "non_billable_cost": 20},
                    {"resource_name": "Object Storage", "billable_cost": 20},
                ],
            },
            "previous": {"resources": [{"resource_name": "Kubernetes Service", "billable_cost": 80}]},
            "credits": 15,
        }
        snapshot = normalize("ibmcloud", payload, account_id="acc-7", as_of=AS_OF)

        assert snapshot.current_month_cost == pytest.approx(120.0)
        assert snapshot.last_month_cost == pytest.approx(80.0)
        assert snapshot.savings == pytest.approx(20.0)
        assert snapshot.credits == pytest.approx(15.0)
        assert services(snapshot)["Kubernetes Service"].change_pct == pytest.approx(25.0)


class TestNormalizeDispatch:

    @pytest.mark.parametrize("provider_id", sorted(ADAPTERS))
    def test_empty_payload_normalizes_to_zero(self, provider_id):
        snapshot = normalize(provider_id, {}, account_id="acc-1", as_of=AS_OF)

        assert snapshot.current_month_cost == 0.0
        assert snapshot.last_month_cost == 0.0
        assert snapshot.credits == 0.0
        assert snapshot.services == []
        assert snapshot.daily_costs == []

    def test_non_object_payload(self):
        with pytest.raises(NormalizationError) as exc:
            normalize("aws", [1, 2, 3], account_id="acc-1", as_of=AS_OF)
        assert exc.value.field == "<root>"

    def test_unsupported_provider(self):
        with pytest.raises(UnsupportedProviderError):
            normalize("oracle", {}, account_id="acc-1", as_of=AS_OF)

    def test_explicit_period_start_respected(self):
        snapshot = normalize("aws", {"period_start": "2024-03-01"}, account_id="acc-1", as_of=AS_OF)
        assert snapshot.period_start == date(2024, 3, 1)
