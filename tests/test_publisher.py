import json

import pytest
from botocore.exceptions import ClientError

from cisflow.core.errors import ExtractionError, PublishError
from cisflow.core.models import ExtractionRule
from cisflow.core.publisher import ArtifactPublisher, SsmParameterRegistry, registry_key

AMI_RULE = ExtractionRule(kind="json", path="builds.-1.artifact_id", split=":", index=1)


class FakeSsmClient:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def put_parameter(self, **kwargs):
        if self.error is not None:
            raise self.error
        self.calls.append(kwargs)
        return {"Version": len(self.calls), "Tier": "Standard"}


def _manifest(*artifact_ids):
    return json.dumps({"builds": [{"name": "amazon-eks", "artifact_id": a} for a in artifact_ids]})


def test_extract_last_build_ami_id():
    out = ArtifactPublisher.extract(_manifest("us-west-2:ami-0aaa", "us-west-2:ami-0123"), AMI_RULE)
    assert out == "ami-0123"


def test_extract_from_empty_builds_fails():
    with pytest.raises(ExtractionError) as ei:
        ArtifactPublisher.extract(_manifest(), AMI_RULE)
    assert "empty" in ei.value.message


def test_extract_missing_field_fails():
    doc = json.dumps({"builds": [{"name": "amazon-eks"}]})
    with pytest.raises(ExtractionError) as ei:
        ArtifactPublisher.extract(doc, AMI_RULE)
    assert "artifact_id" in ei.value.message


def test_extract_invalid_json_fails():
    with pytest.raises(ExtractionError):
        ArtifactPublisher.extract("Build finished\n", AMI_RULE)


def test_extract_without_separator_fails():
    with pytest.raises(ExtractionError):
        ArtifactPublisher.extract(_manifest("ami-0123"), AMI_RULE)


def test_extract_digest_by_regex():
    digest = "sha256:" + "0123456789abcdef" * 4
    output = f"The push refers to repository [x]\nlatest: digest: {digest} size: 2204\n"
    rule = ExtractionRule(kind="regex", pattern=r"digest: (sha256:[0-9a-f]{64})")
    assert ArtifactPublisher.extract(output, rule) == digest


def test_extract_regex_no_match_fails():
    rule = ExtractionRule(kind="regex", pattern=r"digest: (sha256:[0-9a-f]{64})")
    with pytest.raises(ExtractionError):
        ArtifactPublisher.extract("denied: not authorized\n", rule)


def test_publish_writes_string_parameter():
    client = FakeSsmClient()
    publisher = ArtifactPublisher(SsmParameterRegistry(client=client))
    artifact = publisher.publish("Level1AmiId", "ami-0123", "/cis_ami/cis/level_1/ami_id")
    assert client.calls == [{
        "Name": "/cis_ami/cis/level_1/ami_id",
        "Value": "ami-0123",
        "Type": "String",
        "Overwrite": True,
    }]
    assert artifact.registry_key == "/cis_ami/cis/level_1/ami_id"
    assert publisher.published == [artifact]


def test_registry_failure_becomes_publish_error():
    err = ClientError({"Error": {"Code": "AccessDeniedException", "Message": "denied"}}, "PutParameter")
    publisher = ArtifactPublisher(SsmParameterRegistry(client=FakeSsmClient(error=err)))
    with pytest.raises(PublishError) as ei:
        publisher.publish("Level1AmiId", "ami-0123", "/cis_ami/cis/level_1/ami_id")
    assert "AccessDenied" in ei.value.message
    assert publisher.published == []


def test_artifact_published_once_per_run():
    publisher = ArtifactPublisher(SsmParameterRegistry(client=FakeSsmClient()))
    publisher.publish("Level1AmiId", "ami-0123", "/cis_ami/cis/level_1/ami_id")
    with pytest.raises(PublishError):
        publisher.publish("Level1AmiId", "ami-0456", "/cis_ami/cis/level_1/ami_id")


@pytest.mark.parametrize("key, value", [
    ("cis_ami/cis/ami_id", "ami-0123"),
    ("/cis_ami//ami_id", "ami-0123"),
    ("/cis_ami/cis/ami id", "ami-0123"),
    ("/cis_ami/cis/ami_id", ""),
])
def test_invalid_key_or_value_rejected(key, value):
    client = FakeSsmClient()
    publisher = ArtifactPublisher(SsmParameterRegistry(client=client))
    with pytest.raises(PublishError):
        publisher.publish("Level1AmiId", value, key)
    assert client.calls == []


def test_registry_key_convention():
    assert registry_key("cis_ami", "CIS_AL2023", "level_1", "ami_id") == "/cis_ami/CIS_AL2023/level_1/ami_id"
    with pytest.raises(PublishError):
        registry_key("cis_ami", "", "level_1", "ami_id")
