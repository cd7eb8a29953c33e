from node_repository.maintenance.maintenance import NodeRepositoryMaintenance

__all__ = ["NodeRepositoryMaintenance"]
