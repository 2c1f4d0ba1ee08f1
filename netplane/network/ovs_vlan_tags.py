from __future__ import annotations

import csv


def parse_list_ports_output(list_ports_output: str) -> list[str]:
    """Parse `ovs-vsctl list-ports <bridge>` output into sorted port names."""
    return sorted({p.strip() for p in list_ports_output.splitlines() if p.strip()})


def parse_tag_field(tag_raw: str) -> int:
    """Parse an OVS ``tag`` column value. Returns 0 for untagged ports."""
    tag_raw = (tag_raw or "").strip().strip('"')
    if not tag_raw or tag_raw == "[]":
        return 0

    # Some OVS versions render as "[2002]" in list output.
    if tag_raw.startswith("[") and tag_raw.endswith("]"):
        tag_raw = tag_raw[1:-1].strip()
        if not tag_raw:
            return 0

    if "," in tag_raw or " " in tag_raw:
        raise ValueError(f"Unexpected composite VLAN tag value: {tag_raw!r}")

    tag = int(tag_raw)
    return tag if tag > 0 else 0


def parse_csv_columns(csv_text: str, key: str, column: str) -> dict[str, str]:
    """Map ``key`` column to ``column`` from `ovs-vsctl --format=csv list ...`."""
    csv_text = (csv_text or "").strip()
    if not csv_text:
        return {}

    values: dict[str, str] = {}
    reader = csv.DictReader(csv_text.splitlines())
    for row in reader:
        name = (row.get(key) or "").strip().strip('"')
        if name:
            values[name] = (row.get(column) or "").strip().strip('"')
    return values


def port_tags_from_ovs_outputs(
    *,
    bridge_list_ports_output: str,
    list_port_name_tag_csv: str,
) -> dict[str, int]:
    """Compute the VLAN tag of each port on a bridge from OVS CLI outputs.

    Inputs are intended to be:
    - `ovs-vsctl list-ports <bridge>`
    - `ovs-vsctl --format=csv --columns=name,tag list port`
    """
    ports_on_bridge = parse_list_ports_output(bridge_list_ports_output)
    tags = parse_csv_columns(list_port_name_tag_csv, "name", "tag")
    return {name: parse_tag_field(tags.get(name, "")) for name in ports_on_bridge}
