"""Tests for desired and observed state models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError
from pyone import bindings

from onevm.entity import decode_vm
from onevm.models import (
    AddressFormatError,
    VmObservedState,
    VmSpec,
    validate_ip_address,
)


RECORD_XML = (
    "<VM><ID>42</ID><NAME>vm1</NAME><UID>2</UID><GID>1</GID>"
    "<UNAME>alice</UNAME><GNAME>users</GNAME>"
    "<PERMISSIONS><OWNER_U>1</OWNER_U><OWNER_M>1</OWNER_M><GROUP_U>1</GROUP_U>"
    "</PERMISSIONS><STATE>3</STATE><LCM_STATE>3</LCM_STATE>"
    "<TEMPLATE><CPU>0.5</CPU><VCPU>2</VCPU><MEMORY>1024</MEMORY>"
    "<DISK><IMAGE>ubuntu</IMAGE><SIZE>20480</SIZE><DRIVER>qcow2</DRIVER>"
    "<IMAGE_UNAME>oneadmin</IMAGE_UNAME></DISK>"
    "<NIC><NETWORK>net0</NETWORK><NETWORK_UNAME>oneadmin</NETWORK_UNAME>"
    "<SEARCH_DOMAIN>example.com</SEARCH_DOMAIN><SECURITY_GROUPS>100</SECURITY_GROUPS>"
    "</NIC><CONTEXT><ETH0_IP>10.0.0.5</ETH0_IP></CONTEXT></TEMPLATE></VM>"
)


class TestValidateIpAddress:
    """Tests for dotted-quad validation."""

    @pytest.mark.parametrize("value", ["1.2.3.4", "0.0.0.0", "255.255.255.255", "10.0.0.12"])
    def test_valid(self, value: str) -> None:
        """Test that well-formed addresses pass unchanged."""
        assert validate_ip_address(value) == value

    def test_three_octets(self) -> None:
        """Test that an address with three parts is rejected."""
        with pytest.raises(AddressFormatError) as exc_info:
            validate_ip_address("1.2.3")

        assert "four octets" in str(exc_info.value)

    def test_octet_out_of_range(self) -> None:
        """Test that an octet above 255 is rejected."""
        with pytest.raises(AddressFormatError) as exc_info:
            validate_ip_address("1.2.3.256")

        assert "range" in str(exc_info.value)

    @pytest.mark.parametrize("value", ["1.2.3.a", "1.2..4", "1.2.3.-1", "1.2.3.+4", "1.2.3.٤"])
    def test_non_numeric(self, value: str) -> None:
        """Test that non-decimal octets are rejected."""
        with pytest.raises(AddressFormatError):
            validate_ip_address(value)


class TestVmSpec:
    """Tests for the declared VM model."""

    def test_minimal(self) -> None:
        """Test that templateId and network are enough."""
        spec = VmSpec.model_validate({"templateId": 7, "network": {"network": "net0"}})

        assert spec.template_id == 7
        assert spec.name is None
        assert spec.disk.size is None
        assert spec.permissions is None

    def test_full(self) -> None:
        """Test parsing every field via aliases."""
        spec = VmSpec.model_validate(
            {
                "templateId": 7,
                "name": "vm1",
                "cpu": 0.5,
                "vcpu": 2,
                "memory": 1024,
                "permissions": "640",
                "disk": {
                    "image": "ubuntu",
                    "imageUname": "oneadmin",
                    "imageDriver": "qcow2",
                    "size": 20480,
                },
                "network": {
                    "network": "net0",
                    "networkUname": "oneadmin",
                    "searchDomain": "example.com",
                    "securityGroupId": 100,
                    "ip": "10.0.0.5",
                },
            }
        )

        assert spec.cpu == 0.5
        assert spec.size == 20480
        assert spec.ip == "10.0.0.5"
        assert spec.disk.image_driver == "qcow2"
        assert spec.network.security_group_id == 100

    def test_missing_template_id(self) -> None:
        """Test that templateId is required."""
        with pytest.raises(ValidationError):
            VmSpec.model_validate({"network": {"network": "net0"}})

    def test_missing_network(self) -> None:
        """Test that the network block is required."""
        with pytest.raises(ValidationError):
            VmSpec.model_validate({"templateId": 1})

    def test_invalid_permissions(self) -> None:
        """Test that malformed permissions fail model validation."""
        with pytest.raises(ValidationError) as exc_info:
            VmSpec.model_validate(
                {"templateId": 1, "network": {"network": "net0"}, "permissions": "6400"}
            )

        assert "permission" in str(exc_info.value)

    def test_invalid_ip(self) -> None:
        """Test that a malformed address fails model validation."""
        with pytest.raises(ValidationError):
            VmSpec.model_validate({"templateId": 1, "network": {"network": "net0", "ip": "1.2.3"}})

    def test_negative_size(self) -> None:
        """Test that a negative disk size is rejected."""
        with pytest.raises(ValidationError):
            VmSpec.model_validate(
                {"templateId": 1, "network": {"network": "net0"}, "disk": {"size": -1}}
            )

    def test_unknown_field_rejected(self) -> None:
        """Test that typos in field names are not silently ignored."""
        with pytest.raises(ValidationError):
            VmSpec.model_validate(
                {"templateId": 1, "network": {"network": "net0"}, "memroy": 512}
            )

    def test_explicit_zero_kept(self) -> None:
        """Test that an explicit zero is distinct from unset."""
        spec = VmSpec.model_validate(
            {"templateId": 1, "network": {"network": "net0"}, "vcpu": 0}
        )

        assert spec.vcpu == 0
        assert spec.memory is None


class TestVmObservedState:
    """Tests for flattening remote records."""

    def test_from_record(self) -> None:
        """Test that every tracked attribute is taken from the record."""
        record = decode_vm(bindings.parseString(RECORD_XML.encode()))

        observed = VmObservedState.from_record(record)

        assert observed.id == "42"
        assert observed.name == "vm1"
        assert observed.uid == 2
        assert observed.gname == "users"
        assert observed.permissions == "640"
        assert observed.cpu == 0.5
        assert observed.vcpu == 2
        assert observed.memory == 1024
        assert observed.image == "ubuntu"
        assert observed.size == 20480
        assert observed.image_driver == "qcow2"
        assert observed.image_uname == "oneadmin"
        assert observed.network == "net0"
        assert observed.network_uname == "oneadmin"
        assert observed.network_search_domain == "example.com"
        assert observed.security_group_id == 100
        assert observed.ip == "10.0.0.5"
