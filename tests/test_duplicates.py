from datetime import datetime
from decimal import Decimal

from services.ingestion.duplicates import TRACKED_FIELD_NAMES, format_value, resolve
from services.ingestion.records import NON_GEM, FieldChange, ResolutionKind, TenderRecord

PRIOR = TenderRecord(
    external_id="2025_NIC_00001",
    source=NON_GEM,
    title="Annual maintenance of servers",
    organization="National Informatics Centre",
    estimated_value=Decimal("1250000.00"),
    turnover_requirement=Decimal("2.0000"),
    submission_deadline=datetime(2030, 1, 2, 17, 0),
)


def test_first_sighting_is_new():
    assert resolve(PRIOR, None).kind is ResolutionKind.NEW


def test_identical_record_is_duplicate():
    resolution = resolve(PRIOR.with_changes(raw_data={"extra": 1}), PRIOR)
    assert resolution.kind is ResolutionKind.DUPLICATE
    assert resolution.changes == ()


def test_decimals_compare_by_value():
    again = PRIOR.with_changes(estimated_value=Decimal("1250000"), turnover_requirement=Decimal("2"))
    assert resolve(again, PRIOR).kind is ResolutionKind.DUPLICATE


def test_untracked_fields_do_not_make_a_corrigendum():
    assert resolve(PRIOR.with_changes(location="Delhi"), PRIOR).kind is ResolutionKind.DUPLICATE


def test_deadline_change_is_a_single_change_corrigendum():
    updated = PRIOR.with_changes(submission_deadline=datetime(2030, 1, 9, 17, 0))
    resolution = resolve(updated, PRIOR)
    assert resolution.kind is ResolutionKind.CORRIGENDUM
    assert resolution.changes == (
        FieldChange("submissionDeadline", "2030-01-02T17:00:00", "2030-01-09T17:00:00"),
    )


def test_changes_follow_tracked_field_order():
    updated = PRIOR.with_changes(
        checklist="PAN, GST",
        title="Annual maintenance of servers and storage",
        emd_amount=Decimal("25000.00"),
    )
    names = [c.field_name for c in resolve(updated, PRIOR).changes]
    assert names == ["title", "emdAmount", "checklist"]
    assert names == sorted(names, key=TRACKED_FIELD_NAMES.index)


def test_absent_values_render_as_empty_strings():
    updated = PRIOR.with_changes(organization=None, emd_amount=Decimal("25000.00"))
    changes = {c.field_name: c for c in resolve(updated, PRIOR).changes}
    assert changes["organization"].new_value == ""
    assert changes["emdAmount"].old_value == ""
    assert changes["emdAmount"].new_value == "25000"


def test_format_value():
    assert format_value(None) == ""
    assert format_value(Decimal("2.5000")) == "2.5"
    assert format_value(Decimal("100.00")) == "100"
    assert format_value(datetime(2030, 1, 1)) == "2030-01-01T00:00:00"
