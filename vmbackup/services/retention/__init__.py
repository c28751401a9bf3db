from vmbackup.services.retention.policy import RetentionPruner

__all__ = ["RetentionPruner"]
