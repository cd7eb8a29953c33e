from node_repository.provisioning.provisioner import NodeRepositoryProvisioner

__all__ = ["NodeRepositoryProvisioner"]
