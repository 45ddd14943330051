"""
Base Models and Mixins for the Cooperative Ledger
=================================================

Provides:
- UUID primary keys
- Common timestamp fields
- Soft delete functionality
- Active/inactive tracking
"""

from django.conf import settings
from django.db import models
from django.utils import timezone
import uuid


class SoftDeleteManager(models.Manager):
    """Manager that excludes soft-deleted records by default"""

    def get_queryset(self):
        return super().get_queryset().filter(deleted_at__isnull=True)


class BaseModel(models.Model):
    """
    Base model with common fields and soft delete support

    Features:
    - UUID primary key
    - Timestamp tracking (created, updated, deleted)
    - Soft delete functionality
    - Two managers: objects (non-deleted), all_objects (including deleted)
    """

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False
    )

    created_at = models.DateTimeField(
        auto_now_add=True,
        db_index=True,
        help_text="When this record was created"
    )
    updated_at = models.DateTimeField(
        auto_now=True,
        help_text="When this record was last updated"
    )
    deleted_at = models.DateTimeField(
        null=True,
        blank=True,
        db_index=True,
        help_text="When this record was soft-deleted (null = not deleted)"
    )

    objects = SoftDeleteManager()
    all_objects = models.Manager()  # Access deleted records

    class Meta:
        abstract = True
        ordering = ['-created_at']

    def delete(self, using=None, keep_parents=False, hard=False):
        """
        Soft delete by default, unless hard=True

        Usage:
            instance.delete()  # Soft delete
            instance.delete(hard=True)  # Hard delete
        """
        if hard:
            return super().delete(using=using, keep_parents=keep_parents)
        self.deleted_at = timezone.now()
        self.save(update_fields=['deleted_at'])

    @property
    def is_deleted(self):
        return self.deleted_at is not None


class StatusTrackingMixin(models.Model):
    """
    Mixin for records that can be switched off without being deleted

    Inactive chart entries reject new postings; inactive cash accounts
    reject balance changes.
    """

    is_active = models.BooleanField(
        default=True,
        db_index=True,
        help_text="Is this record active?"
    )

    deactivated_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When this record was deactivated"
    )

    deactivated_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='%(class)s_deactivated',
        help_text="User who deactivated this record"
    )

    class Meta:
        abstract = True

    def activate(self):
        self.is_active = True
        self.deactivated_at = None
        self.deactivated_by = None
        self.save(update_fields=['is_active', 'deactivated_at', 'deactivated_by', 'updated_at'])

    def deactivate(self, deactivated_by=None):
        self.is_active = False
        self.deactivated_at = timezone.now()
        self.deactivated_by = deactivated_by
        self.save(update_fields=['is_active', 'deactivated_at', 'deactivated_by', 'updated_at'])
