"""Local stand-in for the hosted tour API."""

from autosetup.server.stub_api import TourApiServer

__all__ = ["TourApiServer"]
