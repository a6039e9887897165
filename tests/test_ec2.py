import base64
from unittest.mock import MagicMock

import paramiko
import pytest
from botocore.exceptions import ClientError

from spotsh.ec2 import (
    DEFAULT_INSTANCE_TYPES,
    LAUNCH_TEMPLATE_NAME,
    EC2Manager,
    validate_launch_spec,
)
from spotsh.exceptions import ConsistencyError, ImageNotFoundError, SpotCapacityError, ValidationError
from spotsh.keys import default_key_file
from spotsh.types import LaunchSpec, OperatingSystem

AMZN2023_PARAM = "/aws/service/ami-amazon-linux-latest/al2023-ami-kernel-default-x86_64"


def _client_error(code, op="DescribeInstances"):
    return ClientError({"Error": {"Code": code, "Message": code}}, op)


def _running(ip=None, az="us-east-1b"):
    inst = {"InstanceId": "i-new", "Placement": {"AvailabilityZone": az}}
    if ip:
        inst["PublicIpAddress"] = ip
        inst["PublicDnsName"] = "ec2-203-0-113-10.compute-1.amazonaws.com"
    return {"Reservations": [{"Instances": [inst]}]}


def _prime_region(ec2, ssm, region="us-east-1", public_key=""):
    ec2.describe_spot_price_history.return_value = {
        "SpotPriceHistory": [
            {"InstanceType": "c5.large", "AvailabilityZone": f"{region}a", "SpotPrice": "0.040"},
            {"InstanceType": "c6a.large", "AvailabilityZone": f"{region}b", "SpotPrice": "0.031"},
        ]
    }
    ec2.describe_vpcs.return_value = {"Vpcs": [{"VpcId": "vpc-1", "IsDefault": True}]}
    ec2.describe_security_groups.return_value = {
        "SecurityGroups": [
            {"GroupId": "sg-web", "GroupName": "web", "VpcId": "vpc-1"},
            {"GroupId": "sg-default", "GroupName": "default", "VpcId": "vpc-1"},
        ]
    }
    ec2.describe_subnets.return_value = {
        "Subnets": [
            {"SubnetId": "subnet-a", "AvailabilityZone": f"{region}a", "DefaultForAz": True},
            {"SubnetId": "subnet-b2", "AvailabilityZone": f"{region}b", "DefaultForAz": False},
            {"SubnetId": "subnet-b", "AvailabilityZone": f"{region}b", "DefaultForAz": True},
        ]
    }
    ec2.describe_key_pairs.return_value = {
        "KeyPairs": [{"KeyPairId": "key-1", "KeyName": f"spotsh.{region}", "PublicKey": public_key}]
    }
    ec2.describe_images.return_value = {"Images": [{"ImageId": "ami-123", "RootDeviceName": "/dev/xvda"}]}
    ec2.describe_launch_templates.side_effect = _client_error(
        "InvalidLaunchTemplateName.NotFoundException", "DescribeLaunchTemplates"
    )
    ec2.create_launch_template.return_value = {"LaunchTemplate": {"LaunchTemplateId": "lt-1"}}
    ec2.create_fleet.return_value = {
        "Instances": [{"InstanceIds": ["i-new"], "InstanceType": "c6a.large"}],
        "Errors": [],
    }
    ec2.describe_instances.side_effect = [_running(), _running("203.0.113.10")]
    ssm.get_parameter.return_value = {"Parameter": {"Value": "ami-123"}}


@pytest.fixture
def region_key(home):
    """Local default key for us-east-1 and its public half."""
    key = paramiko.RSAKey.generate(1024)
    path = default_key_file("us-east-1")
    key.write_private_key_file(str(path))
    return path, f"ssh-rsa {key.get_base64()}"


@pytest.fixture
def primed(client_factory, region_key):
    ec2 = client_factory("ec2", "us-east-1")
    ssm = client_factory("ssm", "us-east-1")
    _prime_region(ec2, ssm, public_key=region_key[1])
    return ec2, ssm


def _manager(client_factory, region="us-east-1"):
    return EC2Manager(region=region, client_factory=client_factory, sleep=MagicMock())


def test_launch_default_amzn2023(client_factory, primed, region_key):
    ec2, ssm = primed

    record = _manager(client_factory).launch(LaunchSpec(os=OperatingSystem.AMZN2023))

    ssm.get_parameter.assert_called_once_with(Name=AMZN2023_PARAM)
    assert record.user == "ec2-user"
    assert record.instance_id == "i-new"
    assert record.public_ip == "203.0.113.10"
    assert record.instance_type == "c6a.large"
    assert record.az_name == "us-east-1b"
    assert record.current_price == 0.031
    assert record.security_group_id == "sg-default"
    assert record.local_key_file == str(region_key[0])
    assert record.region == "us-east-1"

    data = ec2.create_launch_template.call_args.kwargs["LaunchTemplateData"]
    assert ec2.create_launch_template.call_args.kwargs["LaunchTemplateName"] == LAUNCH_TEMPLATE_NAME
    tags = {t["Key"]: t["Value"] for t in data["TagSpecifications"][0]["Tags"]}
    assert tags == {"spotsh.user": "ec2-user", "spotsh.os": "amzn2023", "spotsh.vpn": "false"}
    assert data["ImageId"] == "ami-123"
    assert data["KeyName"] == "spotsh.us-east-1"
    assert data["SecurityGroupIds"] == ["sg-default"]
    assert data["InstanceInitiatedShutdownBehavior"] == "terminate"
    # fleet requests reject templates that carry spot market options
    assert "InstanceMarketOptions" not in data
    assert data["BlockDeviceMappings"] == [{"DeviceName": "/dev/xvda", "Ebs": {"VolumeSize": 64}}]
    assert "UserData" not in data
    assert "IamInstanceProfile" not in data

    fleet = ec2.create_fleet.call_args.kwargs
    assert fleet["Type"] == "instant"
    assert fleet["TargetCapacitySpecification"]["TotalTargetCapacity"] == 1
    assert fleet["SpotOptions"]["AllocationStrategy"] == "price-capacity-optimized"
    assert fleet["SpotOptions"]["SingleAvailabilityZone"] is True
    assert fleet["SpotOptions"]["InstanceInterruptionBehavior"] == "terminate"
    assert fleet["SpotOptions"]["MaxTotalPrice"] == "0.08"
    overrides = fleet["LaunchTemplateConfigs"][0]["Overrides"]
    assert [o["InstanceType"] for o in overrides] == DEFAULT_INSTANCE_TYPES
    assert {o["SubnetId"] for o in overrides} == {"subnet-b"}
    assert {o["MaxPrice"] for o in overrides} == {"0.08"}


def test_launch_with_role_init_cmd_and_replaced_template(client_factory, primed):
    ec2, _ = primed
    ec2.describe_launch_templates.side_effect = None
    ec2.describe_launch_templates.return_value = {"LaunchTemplates": [{"LaunchTemplateId": "lt-old"}]}

    _manager(client_factory).launch(
        LaunchSpec(role_name="dev-role", init_cmd="touch /tmp/x", root_volume_size=20,
                   max_spot_price="0.05", instance_types=["c5.large"])
    )

    ec2.delete_launch_template.assert_called_once_with(LaunchTemplateId="lt-old")
    data = ec2.create_launch_template.call_args.kwargs["LaunchTemplateData"]
    assert data["IamInstanceProfile"] == {"Name": "dev-role"}
    assert base64.b64decode(data["UserData"]) == b"touch /tmp/x"
    assert data["BlockDeviceMappings"][0]["Ebs"]["VolumeSize"] == 20
    fleet = ec2.create_fleet.call_args.kwargs
    assert fleet["SpotOptions"]["MaxTotalPrice"] == "0.05"
    overrides = fleet["LaunchTemplateConfigs"][0]["Overrides"]
    assert [(o["InstanceType"], o["MaxPrice"]) for o in overrides] == [("c5.large", "0.05")]


def test_launch_by_image_name(client_factory, primed):
    ec2, ssm = primed
    ec2.describe_images.side_effect = lambda **kw: (
        {"Images": [{"ImageId": "ami-mine", "Name": "dev-box", "CreationDate": "2024"}]}
        if kw.get("Owners") == ["self"]
        else {"Images": [{"ImageId": "ami-mine", "RootDeviceName": "/dev/sda1"}]}
    )

    record = _manager(client_factory).launch(LaunchSpec(image_name="dev-box", user="admin"))

    ssm.get_parameter.assert_not_called()
    assert record.image_id == "ami-mine"
    assert record.user == "admin"
    assert record.os is OperatingSystem.NONE
    data = ec2.create_launch_template.call_args.kwargs["LaunchTemplateData"]
    tags = {t["Key"]: t["Value"] for t in data["TagSpecifications"][0]["Tags"]}
    assert tags["spotsh.user"] == "admin"
    assert tags["spotsh.os"] == ""


def test_unknown_image_name(client_factory, primed):
    ec2, _ = primed
    ec2.describe_images.return_value = {"Images": []}
    with pytest.raises(ImageNotFoundError):
        _manager(client_factory).launch(LaunchSpec(image_name="nope", user="admin"))
    ec2.create_fleet.assert_not_called()


@pytest.mark.parametrize("spec", [
    LaunchSpec(image_id="ami-1", image_name="x", user="u"),
    LaunchSpec(image_id="ami-1", os=OperatingSystem.DEBIAN12, user="u"),
    LaunchSpec(image_id="ami-1"),
    LaunchSpec(os=OperatingSystem.INVALID),
])
def test_invalid_specs_fail_before_any_call(spec):
    factory = MagicMock()
    with pytest.raises(ValidationError):
        EC2Manager("us-east-1", client_factory=factory).launch(spec)
    factory.assert_not_called()


def test_valid_spec_passes():
    validate_launch_spec(LaunchSpec(image_id="ami-1", user="admin"))


def test_fleet_errors_without_instance(client_factory, primed):
    ec2, _ = primed
    ec2.create_fleet.return_value = {
        "Instances": [],
        "Errors": [{
            "LaunchTemplateAndOverrides": {"Overrides": {"InstanceType": "c5.large"}},
            "ErrorCode": "InsufficientInstanceCapacity",
            "ErrorMessage": "no capacity",
        }],
    }
    with pytest.raises(SpotCapacityError) as exc:
        _manager(client_factory).launch()
    assert exc.value.attempts == [("c5.large", "InsufficientInstanceCapacity", "no capacity")]
    ec2.describe_instances.assert_not_called()


@pytest.mark.parametrize("instances", [
    [],
    [{"InstanceIds": ["i-1", "i-2"], "InstanceType": "c5.large"}],
])
def test_fleet_cardinality_is_a_consistency_error(client_factory, primed, instances):
    ec2, _ = primed
    ec2.create_fleet.return_value = {"Instances": instances, "Errors": []}
    with pytest.raises(ConsistencyError):
        _manager(client_factory).launch()


def test_describe_failure_while_polling_is_degraded_success(client_factory, primed):
    ec2, _ = primed
    ec2.describe_instances.side_effect = [_running(), _client_error("RequestLimitExceeded")]

    record = _manager(client_factory).launch()

    assert record.instance_id == "i-new"
    assert record.public_ip == ""
    assert not record.usable


def test_polling_reservation_count(client_factory, primed):
    ec2, _ = primed
    ec2.describe_instances.side_effect = [{"Reservations": []}]
    with pytest.raises(ConsistencyError):
        _manager(client_factory).launch()


def test_polls_once_per_second_until_address(client_factory, primed):
    ec2, _ = primed
    ec2.describe_instances.side_effect = [_running(), _running(), _running("198.51.100.7")]
    manager = _manager(client_factory)

    record = manager.launch()

    assert record.public_ip == "198.51.100.7"
    assert [c.args for c in manager._sleep.call_args_list] == [(1.0,)] * 3


def test_all_regions_launches_in_cheapest_region(client_factory, home):
    lister = client_factory("ec2", "us-east-2")
    lister.describe_regions.return_value = {
        "Regions": [{"RegionName": "us-east-2"}, {"RegionName": "eu-west-1"}]
    }
    lister.describe_spot_price_history.return_value = {
        "SpotPriceHistory": [
            {"InstanceType": "c5.large", "AvailabilityZone": "us-east-2a", "SpotPrice": "0.09"},
        ]
    }
    ec2 = client_factory("ec2", "eu-west-1")
    _prime_region(ec2, client_factory("ssm", "eu-west-1"), region="eu-west-1")
    ec2.describe_instances.side_effect = [_running("203.0.113.10", az="eu-west-1b")]
    default_key_file("eu-west-1").write_text("not a key")

    record = _manager(client_factory, region="all").launch()

    assert record.region == "eu-west-1"
    assert record.az_name == "eu-west-1b"
    assert record.current_price == 0.031
    assert record.local_key_file == ""
    ec2.create_fleet.assert_called_once()
    lister.create_fleet.assert_not_called()


def test_terminate_and_tags(client_factory):
    ec2 = client_factory("ec2", "us-east-1")
    manager = _manager(client_factory)

    manager.terminate_instance("i-1")
    ec2.terminate_instances.assert_called_once_with(InstanceIds=["i-1"])

    manager.update_tag("i-1", "spotsh.vpn", "true")
    ec2.create_tags.assert_called_once_with(
        Resources=["i-1"], Tags=[{"Key": "spotsh.vpn", "Value": "true"}]
    )

    ec2.describe_tags.return_value = {"Tags": [{"Key": "spotsh.vpn", "Value": "true"}]}
    assert manager.get_tag_value("i-1", "spotsh.vpn") == "true"
    ec2.describe_tags.return_value = {"Tags": []}
    assert manager.get_tag_value("i-1", "spotsh.vpn") == ""
