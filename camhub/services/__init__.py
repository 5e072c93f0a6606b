"""CamHub services: probes, registry, coordinators and the hub."""
