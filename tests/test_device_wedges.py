"""Tests for device/wedges.py module."""

from pathlib import Path

import pytest

from conftest import WEDGE_LISTING, FakeRunner
from netbsd_imagegen.device.wedges import (
    DkctlWedgeFinder,
    WedgeInfo,
    find_wedge,
    parse_wedge_listing,
)
from netbsd_imagegen.errors import DeviceError
from netbsd_imagegen.types import DeviceBinding


@pytest.fixture
def binding() -> DeviceBinding:
    return DeviceBinding(device="vnd0", image_path=Path("/tmp/x.img"))


class TestParseWedgeListing:
    """Tests for parse_wedge_listing."""

    def test_parse(self):
        """Should parse every wedge line and skip the header."""
        wedges = parse_wedge_listing(WEDGE_LISTING)
        assert wedges == [
            WedgeInfo(name="dk0", label="swap", blocks=524288, offset=2048, fstype="swap"),
            WedgeInfo(name="dk1", label="root", blocks=2473984, offset=526336, fstype="ffs"),
        ]

    def test_empty(self):
        """No output means no wedges."""
        assert parse_wedge_listing("") == []

    def test_label_with_spaces(self):
        """Labels may contain spaces."""
        wedges = parse_wedge_listing("dk3: EFI system, 4096 blocks at 40, type: msdos\n")
        assert wedges[0].label == "EFI system"


class TestFindWedge:
    """Tests for find_wedge."""

    def test_found(self):
        """Wedge numbers come from the listing, not from partition order."""
        listing = (
            "dk7: root, 100 blocks at 600, type: ffs\n"
            "dk6: swap, 500 blocks at 100, type: swap\n"
        )
        assert find_wedge(listing, "root") == "dk7"

    def test_not_found(self):
        """Unknown label returns None."""
        assert find_wedge(WEDGE_LISTING, "home") is None


class TestDkctlWedgeFinder:
    """Tests for DkctlWedgeFinder."""

    def test_find_partition_device(self, binding):
        """Runs dkctl listwedges on the bound slot."""
        runner = FakeRunner()
        assert DkctlWedgeFinder(runner).find_partition_device(binding, "root") == "dk1"
        assert runner.commands == [["dkctl", "vnd0", "listwedges"]]

    def test_no_such_label(self, binding):
        """A missing label is a DeviceError."""
        runner = FakeRunner(wedges="dk0: swap, 1 blocks at 2, type: swap\n")
        with pytest.raises(DeviceError) as exc_info:
            DkctlWedgeFinder(runner).find_partition_device(binding, "root")
        assert exc_info.value.stage == "populate"

    def test_dkctl_fails(self, binding):
        """A dkctl failure is a DeviceError wrapping the ToolError."""
        runner = FakeRunner(failures={("dkctl",): 1})
        with pytest.raises(DeviceError) as exc_info:
            DkctlWedgeFinder(runner).find_partition_device(binding, "root")
        assert exc_info.value.__cause__ is not None
