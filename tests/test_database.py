from __future__ import annotations

import re

import pytest

from contact_setup.installer.database import (
    DatabaseProvisioner,
    DatabaseServer,
    derive_database_name,
    describe_error,
    validate_database_name,
)

from conftest import FakeServer, mysql_error

ADMIN_GRANTS = ["GRANT ALL PRIVILEGES ON *.* TO `acct_webuser`@`%`"]
LIMITED_GRANTS = ["GRANT SELECT, INSERT ON `acct_site`.* TO `acct_webuser`@`%`"]


def provisioner_for(server: FakeServer) -> DatabaseProvisioner:
    return DatabaseProvisioner(server_factory=lambda creds: server)


def test_derived_name_reuses_account_prefix():
    assert derive_database_name("acct_webuser", suffix="a1b2") == "acct_contactform_a1b2"
    assert derive_database_name("webuser", suffix="a1b2") == "webuser_contactform_a1b2"


def test_derived_name_has_random_suffix_and_is_valid():
    name = derive_database_name("acct_webuser")
    assert re.fullmatch(r"acct_contactform_[0-9a-f]{4}", name)
    assert validate_database_name(name)


@pytest.mark.parametrize("name", ["site", "acct_site_01", "A" * 64])
def test_valid_database_names(name):
    assert validate_database_name(name)


@pytest.mark.parametrize("name", ["", "bad-name", "x; DROP DATABASE y", "A" * 65, "`quoted`"])
def test_invalid_database_names(name):
    assert not validate_database_name(name)


def test_create_database_refuses_unsafe_names(credentials):
    server = DatabaseServer(credentials, engine_factory=lambda *a, **kw: pytest.fail("no engine expected"))
    with pytest.raises(ValueError):
        server.create_database("site`; DROP DATABASE mysql; --")


def test_describe_error_maps_driver_codes():
    message, code = describe_error(mysql_error(1045, "Access denied for user 'x'@'y'"))
    assert code == 1045
    assert "username or password" in message


def test_provision_stops_when_server_unreachable(credentials):
    server = FakeServer(connect_error=mysql_error(2003, "Can't connect to MySQL server"))
    result = provisioner_for(server).provision(credentials)
    assert result.connection_success is False
    assert result.fallback_needed is True
    assert result.final_database is None
    assert server.disposed


def test_provision_creates_database_for_admin_account(credentials):
    server = FakeServer(grants=ADMIN_GRANTS)
    result = provisioner_for(server).provision(credentials)

    assert result.permission_level == "admin"
    assert result.auto_creation_attempted and result.auto_creation_success
    assert server.created == [result.final_database]
    assert result.final_database.startswith("acct_contactform_")
    assert server.pinged[-1] == result.final_database
    assert len(result.steps) == len(result.messages)


def test_provision_uses_preferred_name(credentials):
    server = FakeServer(grants=ADMIN_GRANTS)
    result = provisioner_for(server).provision(credentials, "acct_forms")
    assert result.final_database == "acct_forms"
    assert server.created == ["acct_forms"]


def test_provision_rejects_invalid_preferred_name(credentials):
    server = FakeServer(grants=ADMIN_GRANTS)
    result = provisioner_for(server).provision(credentials, "bad-name!")
    assert result.fallback_needed is True
    assert server.created == []


def test_failed_creation_falls_back_to_existing_database(credentials):
    server = FakeServer(
        grants=ADMIN_GRANTS,
        databases=["acct_blog"],
        create_error=mysql_error(1044, "Access denied to database"),
    )
    result = provisioner_for(server).provision(credentials)
    assert result.auto_creation_attempted is True
    assert result.auto_creation_success is False
    assert result.final_database == "acct_blog"
    assert result.fallback_needed is False


def test_limited_account_without_databases_needs_fallback(credentials):
    server = FakeServer(grants=LIMITED_GRANTS, databases=[])
    result = provisioner_for(server).provision(credentials)
    assert result.permission_level == "limited"
    assert result.auto_creation_attempted is False
    assert result.fallback_needed is True
    assert result.final_database is None


def test_limited_account_prefers_matching_existing_database(credentials):
    server = FakeServer(grants=LIMITED_GRANTS, databases=["acct_blog", "acct_site"])
    result = provisioner_for(server).provision(credentials, "acct_site")
    assert result.final_database == "acct_site"
    assert result.accessible_databases == ["acct_blog", "acct_site"]


def test_unknown_permission_is_treated_as_limited(credentials):
    class FailingGrants(FakeServer):
        def grants(self):
            raise mysql_error(1142, "SHOW command denied")

    server = FailingGrants(databases=["acct_site"])
    result = provisioner_for(server).provision(credentials)
    assert result.permission_level == "unknown"
    assert result.auto_creation_attempted is False
    assert result.final_database == "acct_site"


def test_final_database_requires_successful_reconnect(credentials):
    server = FakeServer(grants=LIMITED_GRANTS, databases=["acct_site"], unreachable={"acct_site"})
    result = provisioner_for(server).provision(credentials)
    assert result.final_database is None
    assert result.fallback_needed is True


def test_connection_test_reports_failure_message(credentials):
    server = FakeServer(connect_error=mysql_error(1045, "Access denied"))
    result = provisioner_for(server).test_connection(credentials.with_database("acct_site"))
    assert result.success is False
    assert result.error_code == 1045
    assert result.message.startswith("Connection failed:")


def test_connection_test_reports_version_and_table_probe(credentials):
    server = FakeServer()
    result = provisioner_for(server).test_connection(credentials.with_database("acct_site"))
    assert result.success is True
    assert result.server_version == "8.0.36"
    assert result.can_create_tables is True
    assert server.disposed
