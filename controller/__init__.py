"""
Runner Pool - Controller

  controller.reconciler:   the reconciliation loop
  controller.lifecycle:    per-member stop / delete transitions
  controller.creation:     clone, seed and start one runner VM
  controller.allocator:    first-gap vmid allocation
  controller.registration: runner registration with conflict recovery
  controller.tokens:       provisioning tokens
  controller.properties:   Proxmox key=value descriptors
  controller.cli:          runner-pool command line
"""
