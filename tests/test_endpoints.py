import pytest

from irsa_check.endpoints import AddressParseError, parse_relational_endpoint, parse_search_endpoint
from irsa_check.errors import FailureCategory


def test_search_endpoint():
    info = parse_search_endpoint("vpc-mydomain-ab12cd3ef.us-east-1.es.amazonaws.com")
    assert info.identifier == "mydomain"
    assert info.region == "us-east-1"
    assert info.port == 443


def test_search_endpoint_with_scheme_port_and_dashes():
    info = parse_search_endpoint("https://vpc-camunda-os-domain-x1y2z3.eu-west-3.es.amazonaws.com:9200")
    assert info.identifier == "camunda-os-domain"
    assert info.region == "eu-west-3"
    assert info.host == "vpc-camunda-os-domain-x1y2z3.eu-west-3.es.amazonaws.com"
    assert info.port == 9200


@pytest.mark.parametrize("url", [
    "",
    "opensearch.internal:9200",
    "vpc-mydomain.us-east-1.es.amazonaws.com",
    "vpc-mydomain-ab12.nowhere.es.amazonaws.com",
    "vpc-mydomain-ab12.us-east-1.es.example.com",
])
def test_search_endpoint_rejected(url):
    with pytest.raises(AddressParseError) as exc:
        parse_search_endpoint(url)
    assert exc.value.category is FailureCategory.ADDRESS_PARSE


def test_relational_endpoint():
    info = parse_relational_endpoint("jdbc:aws-wrapper:postgresql://db.example:5432/app?wrapperPlugins=iam")
    assert info.host == "db.example"
    assert info.port == 5432
    assert info.region is None


def test_relational_endpoint_default_port_and_rds_host():
    info = parse_relational_endpoint(
        "jdbc:aws-wrapper:postgresql://camunda-db.cluster-abc123xyz.eu-central-1.rds.amazonaws.com/keycloak"
        "?wrapperPlugins=failover,iam&ssl=true"
    )
    assert info.port == 5432
    assert info.identifier == "camunda-db"
    assert info.region == "eu-central-1"


@pytest.mark.parametrize("url", [
    "jdbc:aws-wrapper:postgresql://db.example:5432/app",
    "jdbc:aws-wrapper:postgresql://db.example:5432/app?wrapperPlugins=failover",
    "jdbc:postgresql://db.example:5432/app?wrapperPlugins=iam",
    "postgresql://db.example:5432/app?wrapperPlugins=iam",
    "jdbc:aws-wrapper:postgresql://db.example:port/app?wrapperPlugins=iam",
    "jdbc:aws-wrapper:postgresql://db.example:5432?wrapperPlugins=iam",
    "jdbc:aws-wrapper:postgresql:///app?wrapperPlugins=iam",
])
def test_relational_endpoint_rejected(url):
    with pytest.raises(AddressParseError):
        parse_relational_endpoint(url)
