# -*- coding: utf-8 -*-
"""Browser-pool backed scraper and image re-hosting service for doujindesu."""

__version__ = "0.1.0"
