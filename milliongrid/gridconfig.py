#!/usr/bin/env python3
"""Configuration for the grid server and viewer.

Settings live in an INI file. Compiled-in defaults are read first, then the
user file, then ``MILLIONGRID_<SECTION>_<KEY>`` environment overrides.
Each section is exposed as an attribute object, e.g. ``CFG.grid.width``.
Booleans are coerced; everything else stays a string and is converted at
the use site.
"""

import os
import configparser
import logging
log = logging.getLogger(__name__)


class SectionParser(object):
    true = ['true', '1', 'yes', 'on']
    false = ['false', '0', 'no', 'off']

    def __init__(self, **kwargs):
        for k, v in kwargs.items():
            if isinstance(v, str):
                if v.lower() in self.true:
                    v = True
                elif v.lower() in self.false:
                    v = False
            self.__dict__[k] = v

    def __repr__(self):
        return f"{self.__class__.__name__}({self.__dict__})"


class GridConfig(object):

    _defaults = """
[general]
debug = False

[paths]
data_dir = instance
log_dir = logs

[grid]
width = 1000
height = 1000
slot_size = 40
thumb_size = 40

[upload]
max_bytes = 8388608
max_side = 4096
caption_max = 120
daily_cap = 100
sampling_budget = 8000

[storage]
asset_dir = instance/assets
public_base = /assets

[server]
host = 0.0.0.0
port = 8080

[ratelimit]
enabled = True

[viewer]
server_url = http://localhost:8080
mobile = False
cache_max_entries = 5000
keep_margin = 2
prefetch_halo = 12
lod_switch_px = 160
lod_switch_px_mobile = 300
lod_retry_ms = 5000
base_delay_ms = 120
min_backoff_ms = 250
max_backoff_ms = 5000
error_delay_ms = 300
network_error_delay_ms = 500
feed_size = 50
"""

    env_prefix = "MILLIONGRID_"

    def __init__(self, conf_file=None):
        if conf_file is None:
            conf_file = os.environ.get(
                "MILLIONGRID_CONFIG",
                os.path.join(os.path.expanduser("~"), ".milliongrid.ini")
            )
        self.conf_file = conf_file
        self.config = configparser.ConfigParser()
        self.config.read_string(self._defaults)
        self.load()

    def load(self):
        if self.conf_file and os.path.exists(self.conf_file):
            log.info(f"Loading config from {self.conf_file}")
            self.config.read(self.conf_file)
        self._apply_env()
        self.get_config()

    def _apply_env(self):
        for section in self.config.sections():
            for key in self.config[section]:
                env_key = f"{self.env_prefix}{section}_{key}".upper()
                if env_key in os.environ:
                    self.config[section][key] = os.environ[env_key]

    def get_config(self):
        for section in self.config.sections():
            sp = SectionParser(**self.config[section])
            self.__dict__[section] = sp

    def set(self, section, key, value):
        self.config[section][key] = str(value)
        self.get_config()

    def save(self):
        with open(self.conf_file, 'w') as h:
            self.config.write(h)
        log.info(f"Wrote config to {self.conf_file}")


CFG = GridConfig()
