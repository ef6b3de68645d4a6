"""Bootstrap scripts staged next to the companion interpreter."""
