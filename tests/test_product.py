import pytest

from vm_lifecycle.errors import MalformedSpec, OutOfRange, UnsupportedDiskDelta
from vm_lifecycle.product import (
    InstanceSpec,
    check_range,
    diff,
    enumerate_products,
    parse,
    serialize,
)


def test_parse_cpu_ram_only():
    spec = parse("2:4096")
    assert spec == InstanceSpec(cpu_count=2, ram_mb=4096)
    assert spec.disk_sizes_gb is None


def test_parse_with_disks():
    spec = parse("4:8192:[10,50,100]")
    assert spec.cpu_count == 4
    assert spec.ram_mb == 8192
    assert spec.disk_sizes_gb == (10, 50, 100)


def test_parse_empty_disk_list():
    assert parse("1:1024:[]").disk_sizes_gb == ()


@pytest.mark.parametrize("raw", ["2:4096", "1:1024:[]", "8:65536:[10]", "3:3072:[10,20,30]"])
def test_serialize_round_trip(raw):
    assert serialize(parse(raw)) == raw
    assert str(parse(raw)) == raw


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "2",
        "2:4096:[10]:x",
        "a:4096",
        "2:4gb",
        "02:4096",
        "2:4096:10",
        "2:4096:[10,]",
        "-1:1024",
    ],
)
def test_parse_rejects_malformed(raw):
    with pytest.raises(MalformedSpec):
        parse(raw)


def test_malformed_is_a_value_error():
    with pytest.raises(ValueError):
        parse("nonsense")


def test_check_range_bounds():
    check_range(InstanceSpec(cpu_count=1, ram_mb=1))
    check_range(InstanceSpec(cpu_count=8, ram_mb=65536))
    with pytest.raises(OutOfRange) as exc_info:
        check_range(InstanceSpec(cpu_count=9, ram_mb=1024))
    assert exc_info.value.field == "cpu_count"
    with pytest.raises(OutOfRange) as exc_info:
        check_range(InstanceSpec(cpu_count=2, ram_mb=65537))
    assert exc_info.value.field == "ram_mb"
    with pytest.raises(OutOfRange):
        check_range(InstanceSpec(cpu_count=0, ram_mb=1024))


@pytest.mark.parametrize("raw", ["2:4096", "2:4096:[]", "4:8192:[10,20]"])
def test_diff_of_identical_specs_is_empty(raw):
    spec = parse(raw)
    delta = diff(spec, spec)
    assert delta.is_empty
    assert not delta.cpu_changed
    assert not delta.ram_changed
    assert delta.disk_append is None


def test_diff_reports_changed_fields_only():
    delta = diff(parse("2:4096:[10]"), parse("4:4096:[10]"))
    assert delta.cpu_changed
    assert not delta.ram_changed
    assert delta.disk_append is None


def test_diff_single_tail_append():
    delta = diff(parse("2:4096:[10]"), parse("2:4096:[10,50]"))
    assert delta.disk_append == (50,)
    assert not delta.is_empty


def test_diff_without_disk_segment_leaves_disks_alone():
    delta = diff(parse("2:4096:[10,20]"), parse("2:8192"))
    assert delta.ram_changed
    assert delta.disk_append is None


@pytest.mark.parametrize(
    "current,target",
    [
        ("2:4096:[10,20]", "2:4096:[10]"),
        ("2:4096:[10,20]", "2:4096:[20,10]"),
        ("2:4096:[10,20]", "2:4096:[10,30]"),
        ("2:4096:[10]", "2:4096:[10,20,30]"),
        ("2:4096:[10]", "2:4096:[10,0]"),
    ],
)
def test_diff_rejects_anything_but_one_tail_append(current, target):
    with pytest.raises(UnsupportedDiskDelta):
        diff(parse(current), parse(target))


def test_diff_range_checks_target_before_anything_else():
    with pytest.raises(OutOfRange):
        diff(parse("2:4096"), parse("16:4096"))


def test_enumerate_products_follows_ram_tiers():
    products = enumerate_products("I64", max_cpu=4, max_ram_mb=16384)
    ids = [p.product_id for p in products]
    assert ids[:4] == ["1:1024", "1:2048", "1:3072", "1:4096"]
    assert "2:8192" in ids
    assert "2:9216" not in ids
    assert [p for p in ids if p.startswith("3:")] == ["3:3072", "3:6144", "3:12288"]
    assert [p for p in ids if p.startswith("4:")] == ["4:4096", "4:8192", "4:16384"]
    assert all(p.root_volume_gb == 10 for p in products)
    assert all(p.architecture == "I64" for p in products)


def test_enumerate_products_respects_region_limits():
    products = enumerate_products("I32", max_cpu=2, max_ram_mb=2048)
    assert [p.product_id for p in products] == ["1:1024", "1:2048", "2:1024", "2:2048"]
