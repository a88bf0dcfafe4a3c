import pytest

from salesgrid.errors import (
    DropdownScopeNotFound,
    DuplicateColumn,
    DuplicateOption,
    OptionDeleteForbidden,
    OptionInUse,
    SalesValidationError,
)
from salesgrid import models
from salesgrid.services import importer, rows, schema_registrar

from .conftest import create_user, row_payload, unique


def _dropdown_column(db, actor):
    column = schema_registrar.create_column(db, unique("Region"), "dropdown", actor)
    db.commit()
    return column


def test_derive_key():
    assert schema_registrar.derive_key("Client % Hire Rate!!") == "client__hire_rate"
    assert schema_registrar.derive_key("  Lead   Source ") == "lead_source"
    assert schema_registrar.derive_key("!!!") == ""


def test_manual_duplicate_is_an_error_and_bulk_duplicate_is_skipped(db):
    actor = create_user()
    name = unique("Lead Source")
    created = schema_registrar.create_column(db, name, "text", actor)
    db.commit()
    assert created.key == schema_registrar.derive_key(name)

    with pytest.raises(DuplicateColumn):
        schema_registrar.create_column(db, name.upper(), "text", actor)
    assert schema_registrar.create_column(db, name, "text", actor, skip_duplicates=True) is None


def test_fixed_field_names_and_empty_keys_are_rejected(db):
    actor = create_user()
    with pytest.raises(DuplicateColumn):
        schema_registrar.create_column(db, "Platform", "text", actor)
    with pytest.raises(DuplicateColumn):
        schema_registrar.create_column(db, "Client Rating", "number", actor)
    with pytest.raises(DuplicateColumn):
        schema_registrar.create_column(db, "%%%", "text", actor)
    assert schema_registrar.create_column(db, "Status", "text", actor, skip_duplicates=True) is None


def test_unknown_column_type_is_rejected(db):
    actor = create_user()
    with pytest.raises(SalesValidationError):
        schema_registrar.create_column(db, unique("Score"), "percentage", actor)


def test_display_order_increments(db):
    actor = create_user()
    first = schema_registrar.create_column(db, unique("Alpha"), "text", actor)
    second = schema_registrar.create_column(db, unique("Beta"), "text", actor)
    assert second.display_order == first.display_order + 1


def test_dropdown_scopes_include_dropdown_columns(db):
    actor = create_user()
    column = _dropdown_column(db, actor)
    text_column = schema_registrar.create_column(db, unique("Notes"), "text", actor)
    scopes = schema_registrar.dropdown_scopes(db)
    assert scopes[:2] == ["platform", "technology"]
    assert column.key in scopes
    assert text_column.key not in scopes


def test_case_sensitive_dedup(db):
    actor = create_user()
    scope = _dropdown_column(db, actor).key

    usa = schema_registrar.create_option(db, scope, actor, label="usa")
    assert usa.value == "usa"
    assert schema_registrar.create_option(db, scope, actor, label="usa", skip_duplicates=True) is None
    upper = schema_registrar.create_option(db, scope, actor, label="USA", value="USA")
    canada = schema_registrar.create_option(db, scope, actor, label="Canada")
    db.commit()

    assert [o.label for o in schema_registrar.list_options(db, scope)] == ["usa", "USA", "Canada"]
    assert [o.display_order for o in (usa, upper, canada)] == [0, 1, 2]
    assert schema_registrar.is_new_dropdown_value(db, scope, "Usa")
    assert not schema_registrar.is_new_dropdown_value(db, scope, "canada")
    assert not schema_registrar.is_new_dropdown_value(db, scope, "Canada")


def test_value_defaults_from_label(db):
    actor = create_user()
    scope = _dropdown_column(db, actor).key
    option = schema_registrar.create_option(db, scope, actor, label="North America")
    assert option.value == "north_america"
    with pytest.raises(DuplicateOption):
        schema_registrar.create_option(db, scope, actor, label="NA", value="north_america")


def test_unknown_scope(db):
    actor = create_user()
    with pytest.raises(DropdownScopeNotFound):
        schema_registrar.create_option(db, unique("nowhere"), actor, label="x")


def test_option_in_use_cannot_be_deleted(db):
    actor = create_user()
    label = unique("Agency")
    option = schema_registrar.create_option(db, "client_budget", actor, label=label, value=label)
    rows.create_row(db, row_payload(client_budget=label), actor)
    db.commit()

    with pytest.raises(OptionInUse) as excinfo:
        schema_registrar.delete_option(db, "client_budget", option.id, actor)
    assert excinfo.value.context["usage_count"] == 1
    db.rollback()
    assert option.id in {o.id for o in schema_registrar.list_options(db, "client_budget")}


def test_custom_column_usage_is_detected(db):
    actor = create_user()
    scope = _dropdown_column(db, actor).key
    option = schema_registrar.create_option(db, scope, actor, label="EMEA", value="emea")
    rows.create_row(db, row_payload(**{scope: "EMEA"}), actor)
    db.commit()

    assert schema_registrar.find_option_usage(db, scope, option) == 1
    with pytest.raises(OptionInUse):
        schema_registrar.delete_option(db, scope, option.id, actor)


def test_unused_option_is_deactivated(db):
    actor = create_user()
    scope = _dropdown_column(db, actor).key
    option = schema_registrar.create_option(db, scope, actor, label="APAC")
    db.commit()

    removed = schema_registrar.delete_option(db, scope, option.id, actor)
    db.commit()
    assert removed.is_active is False
    assert schema_registrar.list_options(db, scope) == []
    assert schema_registrar.is_new_dropdown_value(db, scope, "APAC")


def test_only_creator_or_admin_may_delete(db):
    owner = create_user()
    stranger = create_user()
    admin = create_user(is_admin=True)
    scope = _dropdown_column(db, owner).key
    option = schema_registrar.create_option(db, scope, owner, label="LATAM")
    db.commit()

    with pytest.raises(OptionDeleteForbidden):
        schema_registrar.delete_option(db, scope, option.id, stranger)
    assert schema_registrar.delete_option(db, scope, option.id, admin).is_active is False


def test_update_option_rechecks_collisions(db):
    actor = create_user()
    scope = _dropdown_column(db, actor).key
    schema_registrar.create_option(db, scope, actor, label="Gold")
    silver = schema_registrar.create_option(db, scope, actor, label="Silver")
    db.commit()

    with pytest.raises(DuplicateOption):
        schema_registrar.update_option(db, scope, silver.id, {"label": "Gold"})
    db.rollback()
    updated = schema_registrar.update_option(db, scope, silver.id, {"label": "Platinum", "color": "#ccc"})
    assert updated.label == "Platinum"
    assert updated.value == "silver"


def test_delete_column_removes_its_options(db):
    actor = create_user()
    column = _dropdown_column(db, actor)
    schema_registrar.create_option(db, column.key, actor, label="One")
    db.commit()

    schema_registrar.delete_column(db, column.id)
    db.commit()
    assert column.key not in schema_registrar.dropdown_scopes(db)
    assert schema_registrar.list_options(db, column.key) == []


def test_numeric_dropdown_values_are_guarded(db):
    actor = create_user()
    column = _dropdown_column(db, actor)

    result = importer.import_rows(db, [{**row_payload(), column.key: 5}], actor)
    option = next(o for o in result.dropdown_options_created if o.column_name == column.key)
    assert option.value == "5"
    stored = db.get(models.SalesRow, result.succeeded[0]["id"])
    assert stored.custom_fields[column.key] == "5"

    with pytest.raises(OptionInUse):
        schema_registrar.delete_option(db, column.key, option.id, actor)
    db.rollback()

    # rows written before values were normalised may still hold numbers
    stored.custom_fields = {column.key: 5}
    db.commit()
    assert schema_registrar.find_option_usage(db, column.key, option) == 1


@pytest.mark.parametrize("scope", ["client_budget", None])
def test_options_referenced_only_by_retired_rows_can_be_deleted(db, scope):
    actor = create_user()
    scope = scope or _dropdown_column(db, actor).key
    label = unique("Tier")
    option = schema_registrar.create_option(db, scope, actor, label=label, value=label)
    soft = rows.create_row(db, row_payload(**{scope: label}), actor)
    purged = rows.create_row(db, row_payload(**{scope: label}), actor)
    db.commit()
    assert schema_registrar.find_option_usage(db, scope, option) == 2

    rows.delete_row(db, soft.id, actor)
    db.commit()
    assert schema_registrar.find_option_usage(db, scope, option) == 1

    rows.delete_row(db, purged.id, actor)
    rows.purge_row(db, purged.id)
    db.commit()
    assert schema_registrar.find_option_usage(db, scope, option) == 0

    removed = schema_registrar.delete_option(db, scope, option.id, actor)
    db.commit()
    assert removed.is_active is False
