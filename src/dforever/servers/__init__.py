"""HTTP surfaces: host-dispatching webserver and the pinning web API."""
