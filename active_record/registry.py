import logging
import typing

import attr

from active_record.errors import UnknownModel


logger = logging.getLogger(__name__)


@attr.s(auto_attribs=True)
class Registry:
    models: typing.Dict[str, typing.Type] = attr.Factory(dict)

    def register(self, model: typing.Type) -> None:
        name = model.__name__
        if self.models.get(name, model) is not model:
            logger.warning("Replacing model %s in registry", name)
        self.models[name] = model

    def resolve(self, model: typing.Union[str, typing.Type]) -> typing.Type:
        if not isinstance(model, str):
            return model
        try:
            return self.models[model]
        except KeyError:
            raise UnknownModel(f"Model {model!r} is not registered")
