"""
Shared fixtures: ideal-solution component sets used across the test suite.

A and B are non-volatile isomers (equal molecular weight), so recycle
flowsheets built from them stay liquid and have analytic steady states.
Benzene and toluene carry Antoine coefficients (ln Pa, K) for VLE tests.
"""

import pytest

from flowsim.flowsheet import Flowsheet
from flowsim.ideal_package import IdealPropertyPackage
from flowsim.schemas import IdealComponentSpec, IdealPackageSpec

BENZENE = IdealComponentSpec(
    name="benzene",
    mw=78.11,
    cp_liquid=136.0,
    cp_vapor=82.4,
    hvap=33830.0,
    hf=49000.0,
    antoine=[20.7937, 2788.5, -52.36],
    liquid_density=876.0,
    formula={"C": 6, "H": 6},
)

TOLUENE = IdealComponentSpec(
    name="toluene",
    mw=92.14,
    cp_liquid=157.0,
    cp_vapor=103.7,
    hvap=38010.0,
    hf=12400.0,
    antoine=[20.9065, 3096.5, -53.668],
    liquid_density=867.0,
    formula={"C": 7, "H": 8},
)


def isomer_components():
    return [
        IdealComponentSpec(name="A", mw=50.0, cp_liquid=100.0, hf=0.0, formula={"X": 2, "Y": 1}),
        IdealComponentSpec(name="B", mw=50.0, cp_liquid=100.0, hf=-5000.0, formula={"X": 2, "Y": 1}),
    ]


@pytest.fixture
def isomers():
    return IdealPropertyPackage(isomer_components())


@pytest.fixture
def btx():
    return IdealPropertyPackage([BENZENE, TOLUENE])


# ---------------------------------------------------------------------------
# Flowsheet builders
# ---------------------------------------------------------------------------

P_ATM = 101325.0


def make_recycle_flowsheet(recycle_fraction=0.9, conversion=0.5, feed_kg_h=100.0, name="simple-recycle"):
    """Feed (pure A) -> Mixer -> Reactor (A -> B) -> Splitter -> recycle / purge."""
    fs = Flowsheet(
        ["A", "B"],
        name=name,
        property_package=IdealPackageSpec(components=isomer_components()),
    )
    fs.add_operation("mixer", {}, id="mix")
    fs.add_operation(
        "reactor",
        {
            "reactions": [{"stoichiometry": {"A": -1, "B": 1}, "conversion": conversion}],
            "temperature": 300.0,
        },
        id="rx",
    )
    fs.add_operation("splitter", {"fractions": [recycle_fraction]}, id="split")
    fs.add_feed(
        "mix",
        0,
        {"pressure": P_ATM, "temperature": 300.0, "flows": {"A": feed_kg_h / 3600.0}, "basis": "mass"},
        id="feed",
    )
    fs.connect("mix", 0, "rx", 0, id="mixed")
    fs.connect("rx", 0, "split", 0, id="reacted")
    fs.connect("split", 0, "mix", 1, id="recycle")
    fs.connect("split", 1, None, id="purge")
    return fs


def make_linear_recycle_flowsheet(recycle_fraction=0.5):
    """Feed -> Mixer -> Splitter with a fixed fraction returned to the mixer.

    The tear map is linear with slope ``recycle_fraction``.
    """
    fs = Flowsheet(
        ["A", "B"],
        name="linear-recycle",
        property_package=IdealPackageSpec(components=isomer_components()),
    )
    fs.add_operation("mixer", {}, id="mix")
    fs.add_operation("splitter", {"fractions": [recycle_fraction]}, id="split")
    fs.add_feed("mix", 0, {"pressure": P_ATM, "temperature": 300.0, "flows": {"A": 1.0}}, id="feed")
    fs.connect("mix", 0, "split", 0, id="mixed")
    fs.connect("split", 0, "mix", 1, id="recycle")
    fs.connect("split", 1, None, id="product")
    return fs


def make_exchanger_flowsheet(cold_outlet_temperature=350.0, flow_arrangement="counter"):
    """Hot A at 400 K against cold A at 300 K, equal flows."""
    fs = Flowsheet(
        ["A", "B"],
        name="exchanger",
        property_package=IdealPackageSpec(components=isomer_components()),
    )
    fs.add_operation(
        "heat_exchanger",
        {"cold_outlet_temperature": cold_outlet_temperature, "flow_arrangement": flow_arrangement},
        id="hx",
    )
    fs.add_feed("hx", 0, {"pressure": P_ATM, "temperature": 400.0, "flows": {"A": 1.0}}, id="hot_in")
    fs.add_feed("hx", 1, {"pressure": P_ATM, "temperature": 300.0, "flows": {"A": 1.0}}, id="cold_in")
    fs.connect("hx", 0, None, id="hot_out")
    fs.connect("hx", 1, None, id="cold_out")
    return fs
