"""
LDAP group source.

Reads the members of an LDAP group and yields their mail addresses as member
entries. Active Directory style ``memberOf`` reverse lookup is used by default;
servers without it can read the group's ``member`` attribute instead.
"""

import logging
import ssl
from typing import Any, Dict, List, Optional

from ldap3 import ALL, BASE, SUBTREE, Connection, Server, Tls
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars

from directory_sync.logging_setup import audit_logger
from directory_sync.models import Role
from .base import SourceError, SourceReader, SourceRow

logger = logging.getLogger(__name__)


class LDAPSourceReader(SourceReader):
    """
    Reads group members from an LDAP directory.

    Connects once per read; there is no retry.
    """

    def __init__(self, config: Dict[str, Any], group_dn: str, use_memberof: bool = True):
        """
        Args:
            config: The ``ldap`` configuration block
            group_dn: Distinguished name of the source group
            use_memberof: Use memberOf reverse lookup rather than the group's member attribute
        """
        self.server_url = config['server_url']
        self.bind_dn = config['bind_dn']
        self.bind_password = config['bind_password']
        self.user_base_dn = config.get('user_base_dn', '')
        self.user_filter = config.get('user_filter', '(objectClass=person)')
        self.mail_attribute = config.get('mail_attribute', 'mail')

        self.use_ssl = config.get('use_ssl', self.server_url.lower().startswith('ldaps://'))
        self.start_tls = config.get('start_tls', False)
        self.verify_ssl = config.get('verify_ssl', True)
        self.ca_cert_file = config.get('ca_cert_file')
        self.cert_file = config.get('cert_file')
        self.key_file = config.get('key_file')

        self.connection_timeout = config.get('connection_timeout', 10)
        self.receive_timeout = config.get('receive_timeout', 10)
        self.page_size = config.get('page_size', 1000)

        self.group_dn = group_dn
        self.use_memberof = use_memberof
        self.server = None
        self.connection = None

    def describe(self) -> str:
        return f"LDAP group {self.group_dn}"

    def _create_tls_config(self) -> Optional[Tls]:
        if not (self.use_ssl or self.start_tls):
            return None

        tls_config = {'validate': ssl.CERT_REQUIRED if self.verify_ssl else ssl.CERT_NONE}
        if not self.verify_ssl:
            logger.warning("LDAP certificate verification disabled")
        if self.ca_cert_file:
            tls_config['ca_certs_file'] = self.ca_cert_file
        if self.cert_file and self.key_file:
            tls_config['local_certificate_file'] = self.cert_file
            tls_config['local_private_key_file'] = self.key_file
            logger.debug("Client certificate configured for mutual TLS")
        return Tls(**tls_config)

    def connect(self):
        """
        Open, secure and bind the connection.

        Raises:
            SourceError: If any step fails
        """
        try:
            self.server = Server(
                self.server_url,
                use_ssl=self.use_ssl,
                tls=self._create_tls_config(),
                get_info=ALL,
                connect_timeout=self.connection_timeout
            )
            self.connection = Connection(
                self.server,
                user=self.bind_dn,
                password=self.bind_password,
                auto_bind=False,
                receive_timeout=self.receive_timeout
            )

            if not self.connection.open():
                raise SourceError(f"Failed to open LDAP connection: {self.connection.result}")
            if self.start_tls and not self.use_ssl and not self.connection.start_tls():
                raise SourceError(f"Failed to start TLS: {self.connection.result}")
            if not self.connection.bind():
                audit_logger.log_authentication_attempt('ldap', self.bind_dn, False)
                raise SourceError(f"LDAP bind failed: {self.connection.result}")
        except LDAPException as e:
            self.disconnect()
            raise SourceError(f"Failed to connect to LDAP server {self.server_url}: {e}")
        except SourceError:
            self.disconnect()
            raise

        audit_logger.log_authentication_attempt('ldap', self.bind_dn, True)
        logger.info(f"Connected and bound to LDAP server {self.server_url}")

    def disconnect(self):
        if self.connection is not None:
            try:
                self.connection.unbind()
            except LDAPException as e:
                logger.warning(f"Error closing LDAP connection: {e}")
            finally:
                self.connection = None

    def read(self) -> List[SourceRow]:
        self.connect()
        try:
            if self.use_memberof:
                mails = self._mails_by_memberof()
            else:
                mails = self._mails_by_group_attribute()
        except LDAPException as e:
            raise SourceError(f"LDAP query for {self.group_dn} failed: {e}")
        finally:
            self.disconnect()

        logger.info(f"Read {len(mails)} members from {self.describe()}")
        return [SourceRow(None, tuple((mail, Role.MEMBER) for mail in mails))]

    def _search_base(self) -> str:
        if self.user_base_dn:
            return self.user_base_dn

        dc_parts = [part.strip() for part in self.bind_dn.split(',') if part.strip().upper().startswith('DC=')]
        if dc_parts:
            return ','.join(dc_parts)

        if self.server and self.server.info and self.server.info.naming_contexts:
            return self.server.info.naming_contexts[0]

        raise SourceError("Cannot determine LDAP search base; set ldap.user_base_dn")

    def _mail_of(self, attributes: Dict[str, Any]) -> str:
        value = attributes.get(self.mail_attribute)
        if isinstance(value, (list, tuple)):
            value = value[0] if value else None
        # Entries without a mail value are still returned so they are counted and skipped
        return '' if value is None else str(value)

    def _mails_by_memberof(self) -> List[str]:
        search_filter = f"(&{self.user_filter}(memberOf={escape_filter_chars(self.group_dn)}))"
        search_base = self._search_base()
        logger.debug(f"Searching with filter: {search_filter} in base: {search_base}")

        mails = []
        entries = self.connection.extend.standard.paged_search(
            search_base=search_base,
            search_filter=search_filter,
            search_scope=SUBTREE,
            attributes=[self.mail_attribute],
            paged_size=self.page_size,
            generator=True
        )
        for entry in entries:
            if entry.get('type') != 'searchResEntry':
                continue
            mails.append(self._mail_of(entry.get('attributes', {})))
        return mails

    def _mails_by_group_attribute(self) -> List[str]:
        if not self.connection.search(self.group_dn, '(objectClass=*)', search_scope=BASE, attributes=['member']):
            raise SourceError(f"LDAP group not found: {self.group_dn}")

        member_dns = self.connection.response[0].get('attributes', {}).get('member', [])
        logger.debug(f"Group {self.group_dn} lists {len(member_dns)} members")

        mails = []
        for member_dn in member_dns:
            if self.connection.search(member_dn, '(objectClass=*)', search_scope=BASE,
                                      attributes=[self.mail_attribute]) and self.connection.response:
                mails.append(self._mail_of(self.connection.response[0].get('attributes', {})))
            else:
                logger.warning(f"Member {member_dn} of {self.group_dn} could not be read")
                mails.append('')
        return mails
