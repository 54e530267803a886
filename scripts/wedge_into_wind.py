"""Wedge into a 15 mph headwind with the logarithmic profile"""

SCRIPT = {
    "clear": True,
    "wind": {"speed": 6.7, "direction": 180.0, "log": True},
    "launch": {
        "speed":     45.6,
        "angle":     24.2,
        "heading":   0.0,
        "spin":      9304.0,
        "spin_axis": 0.0,
    },
}
