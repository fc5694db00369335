"""Book compilation service: phases A/B1/B2/C, the runner and the worker API."""
