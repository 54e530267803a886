"""Draw, straight and fade side by side"""

SCRIPT = {
    "clear": True,
    "shots": [
        {"speed": 74.65, "angle": 10.9, "heading":  2.0, "spin": 2600.0, "spin_axis": -12.0},
        {"speed": 74.65, "angle": 10.9, "heading":  0.0, "spin": 2600.0, "spin_axis":   0.0},
        {"speed": 74.65, "angle": 10.9, "heading": -2.0, "spin": 2600.0, "spin_axis":  12.0},
    ],
}
