"""Database models for the deployer."""

from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text

from .database import Base


class ClusterRow(Base):
    """Deployment target registered with the admin console."""

    __tablename__ = "cluster"

    id = Column(String(64), primary_key=True)
    title = Column(String(255), nullable=False)
    slug = Column(String(255), unique=True)
    token = Column(String(255), unique=True, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<ClusterRow(id={self.id}, title={self.title})>"


class AppRow(Base):
    """Application metadata, including the restore cycle fields."""

    __tablename__ = "app"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), unique=True, nullable=False)
    current_sequence = Column(Integer)
    is_airgap = Column(Boolean, default=False, nullable=False)
    restore_in_progress_name = Column(String(255))
    restore_undeploy_status = Column(String(32), default="", nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<AppRow(id={self.id}, slug={self.slug})>"


class AppDownstreamRow(Base):
    """An app deployed to a cluster and the sequence the cluster should run."""

    __tablename__ = "app_downstream"

    app_id = Column(String(64), ForeignKey("app.id"), primary_key=True)
    cluster_id = Column(String(64), ForeignKey("cluster.id"), primary_key=True)
    downstream_name = Column(String(255), nullable=False)
    current_sequence = Column(Integer)


class AppDownstreamVersionRow(Base):
    """One version of an app targeted at one cluster."""

    __tablename__ = "app_downstream_version"

    app_id = Column(String(64), primary_key=True)
    cluster_id = Column(String(64), primary_key=True)
    sequence = Column(Integer, primary_key=True)
    status = Column(String(32), nullable=False, default="pending")
    status_info = Column(Text, default="", nullable=False)
    source = Column(String(255), default="", nullable=False)
    diff_summary = Column(Text, default="", nullable=False)
    git_commit_url = Column(String(512))
    git_deployable = Column(Boolean, default=False, nullable=False)
    applied_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class AppDownstreamOutputRow(Base):
    """Apply output reported by an agent."""

    __tablename__ = "app_downstream_output"

    app_id = Column(String(64), primary_key=True)
    cluster_id = Column(String(64), primary_key=True)
    downstream_sequence = Column(Integer, primary_key=True)
    is_error = Column(Boolean, default=False, nullable=False)
    dryrun_stdout = Column(Text, default="", nullable=False)
    dryrun_stderr = Column(Text, default="", nullable=False)
    apply_stdout = Column(Text, default="", nullable=False)
    apply_stderr = Column(Text, default="", nullable=False)
    helm_stdout = Column(Text, default="", nullable=False)
    helm_stderr = Column(Text, default="", nullable=False)
    render_error = Column(Text, default="", nullable=False)


class AppStatusRow(Base):
    """Latest computed health of an app."""

    __tablename__ = "app_status"

    app_id = Column(String(64), primary_key=True)
    resource_states = Column(JSON, default=list, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    sequence = Column(Integer)


class PendingSupportBundleRow(Base):
    """Support bundle collection queued for a cluster."""

    __tablename__ = "pending_supportbundle"

    id = Column(String(64), primary_key=True)
    app_id = Column(String(64), nullable=False)
    cluster_id = Column(String(64), nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
