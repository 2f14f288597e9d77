"""Configuration handed to the web frontend."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

CONFIG_FILE_VARIABLE = "FRONTEND_CONFIG_FILE"


def _key(name: str, omit: bool = False) -> Dict[str, Any]:
    return {"json": name, "omit": omit}


def _dump(obj: Any) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for item in fields(obj):
        key = item.metadata.get("json")
        if key is None:
            continue
        value = getattr(obj, item.name)
        if item.metadata.get("omit") and not value:
            continue
        result[key] = list(value) if isinstance(value, list) else value
    return result


def _load(cls: Any, data: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        item.name: data[item.metadata["json"]]
        for item in fields(cls)
        if "json" in item.metadata and item.metadata["json"] in data
    }


@dataclass
class TokenGetter:
    """Where the frontend obtains a token for a plugin."""

    url: str = field(default="", metadata=_key("URL", omit=True))
    oauth_client_id: str = field(default="", metadata=_key("oauth_client_id", omit=True))

    def to_dict(self) -> Dict[str, Any]:
        return _dump(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TokenGetter":
        return cls(**_load(cls, data))


@dataclass
class RepoPlugin:
    """A source repository the user can synchronise from."""

    id: str = field(default="", metadata=_key("id"))
    name: str = field(default="", metadata=_key("name"))
    plugin: str = field(default="", metadata=_key("plugin"))
    plugin_name: str = field(default="", metadata=_key("pluginName"))
    option_field_name: str = field(default="", metadata=_key("optionFieldName", True))
    option_placeholder: str = field(default="", metadata=_key("optionFieldPlaceholder", True))
    option_field_interactive: bool = field(
        default=False, metadata=_key("optionFieldInteractive", True)
    )
    token_field_name: str = field(default="", metadata=_key("tokenFieldName", True))
    token_field_placeholder: str = field(
        default="", metadata=_key("tokenFieldPlaceholder", True)
    )
    source_url_field_name: str = field(default="", metadata=_key("sourceUrlFieldName", True))
    source_url_field_placeholder: str = field(
        default="", metadata=_key("sourceUrlFieldPlaceholder", True)
    )
    source_url_field_value: str = field(default="", metadata=_key("sourceUrlFieldValue", True))
    username_field_name: str = field(default="", metadata=_key("usernameFieldName", True))
    username_field_placeholder: str = field(
        default="", metadata=_key("usernameFieldPlaceholder", True)
    )
    repo_name_field_name: str = field(default="", metadata=_key("repoNameFieldName", True))
    repo_name_field_placeholder: str = field(
        default="", metadata=_key("repoNameFieldPlaceholder", True)
    )
    repo_name_field_editable: bool = field(
        default=False, metadata=_key("repoNameFieldEditable", True)
    )
    repo_name_field_values: List[str] = field(
        default_factory=list, metadata=_key("repoNameFieldValues", True)
    )
    repo_name_field_has_search: bool = field(
        default=False, metadata=_key("repoNameFieldHasSearch")
    )
    repo_name_field_has_init: bool = field(default=False, metadata=_key("repoNameFieldHasInit"))
    parse_source_url_field: bool = field(default=False, metadata=_key("parseSourceUrlField"))
    token_name: str = field(default="", metadata=_key("tokenName", True))
    token_getter: TokenGetter = field(default_factory=TokenGetter)

    def to_dict(self) -> Dict[str, Any]:
        result = _dump(self)
        result["tokenGetter"] = self.token_getter.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RepoPlugin":
        kwargs = _load(cls, data)
        if "repo_name_field_values" in kwargs:
            kwargs["repo_name_field_values"] = list(kwargs["repo_name_field_values"] or [])
        return cls(token_getter=TokenGetter.from_dict(data.get("tokenGetter") or {}), **kwargs)


@dataclass
class FrontendConfiguration:
    """Everything the frontend needs to render its forms."""

    dataverse_header: str = field(default="", metadata=_key("dataverseHeader"))
    collection_options_hidden: bool = field(
        default=False, metadata=_key("collectionOptionsHidden")
    )
    create_new_dataset_enabled: bool = field(
        default=False, metadata=_key("createNewDatasetEnabled")
    )
    dataset_field_editable: bool = field(default=False, metadata=_key("datasetFieldEditable"))
    collection_field_editable: bool = field(
        default=False, metadata=_key("collectionFieldEditable")
    )
    external_url: str = field(default="", metadata=_key("externalURL"))
    show_dv_token_getter: bool = field(default=False, metadata=_key("showDvTokenGetter"))
    show_dv_token: bool = field(default=False, metadata=_key("showDvToken"))
    redirect_uri: str = field(default="", metadata=_key("redirect_uri", True))
    store_dv_token: bool = field(default=False, metadata=_key("storeDvToken", True))
    send_mails: bool = field(default=False, metadata=_key("sendMails"))
    plugins: List[RepoPlugin] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        result = _dump(self)
        result["plugins"] = [plugin.to_dict() for plugin in self.plugins]
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FrontendConfiguration":
        plugins = [RepoPlugin.from_dict(item) for item in data.get("plugins") or []]
        return cls(plugins=plugins, **_load(cls, data))

    def resolve_external_url(self, external_url: str) -> str:
        """Fill in the external address if unset and return the address in use."""
        if not self.external_url:
            self.external_url = external_url
            logger.info("%s", self.external_url)
            if "kuleuven" in self.external_url:
                self.collection_options_hidden = True
        return self.external_url

    def plugin_map(self) -> Dict[str, RepoPlugin]:
        """Return the configured plugins keyed by id."""
        return {plugin.id: plugin for plugin in self.plugins}


def load_frontend_config(path: Optional[str] = None) -> FrontendConfiguration:
    """Read the configuration from ``path`` or the file named by FRONTEND_CONFIG_FILE.

    When no file can be read an empty configuration is returned; a file that is
    not valid configuration JSON raises ValueError.
    """
    config_file = path if path is not None else os.environ.get(CONFIG_FILE_VARIABLE, "")
    if not config_file:
        return FrontendConfiguration()
    try:
        with open(config_file, encoding="utf-8") as handle:
            text = handle.read()
    except OSError:
        return FrontendConfiguration()
    logger.info("using frontend configuration from %s", config_file)
    try:
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("configuration must be a JSON object")
        return FrontendConfiguration.from_dict(data)
    except (ValueError, TypeError) as error:
        raise ValueError(f"could not unmarshal config: {error}") from error